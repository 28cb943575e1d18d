from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from pageforge.config import settings
from pageforge.errors import JobStateError, StepFailedError
from pageforge.llm.client import LLMClient
from pageforge.schemas.steps import StepOutput, decode_step_output, encode_step_output
from pageforge.services import jobs as jobs_service
from pageforge.services.jobs import Job
from pageforge.services.steps import STEP_HANDLERS
from pageforge.services.steps.context import ImageGenerator, StepContext, StepResult
from pageforge.storage.base import RecordStore

logger = logging.getLogger(__name__)


class PipelineRunner:
    """
    Drives a job through the fixed step sequence.

    Each step runs only after the previous step's output is committed. A
    collaborator failure fails the job and is reported as StepFailedError; the
    runner never retries on its own.
    """

    def __init__(
        self,
        store: RecordStore,
        llm: LLMClient,
        images: ImageGenerator,
        *,
        handlers: Optional[dict[str, Callable[[StepContext], StepResult]]] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.store = store
        self.llm = llm
        self.images = images
        self.handlers = handlers or STEP_HANDLERS
        self.timeout_seconds = float(timeout_seconds or settings.PIPELINE_TIMEOUT_SECONDS)

    def _decode_outputs(self, job: Job) -> dict[str, StepOutput]:
        return {
            step: decode_step_output(step, payload)
            for step, payload in job.step_outputs.items()
            if step in jobs_service.STEP_SEQUENCE and isinstance(payload, dict)
        }

    def _fail(self, job_id: str, step: str, message: str) -> None:
        # The job stays at `step` when the failure cannot be recorded, so a later request can re-enter it.
        try:
            jobs_service.fail_job(self.store, job_id, message)
        except Exception:
            logger.exception("pipeline.fail_job_failed", extra={"job_id": job_id, "step": step})

    def run_step(self, job_id: str, step: str, *, deadline: Optional[float] = None) -> Job:
        jobs_service.validate_step(step)
        jobs_service.begin_step(self.store, job_id, step)
        job = jobs_service.get_job(self.store, job_id)

        handler = self.handlers[step]
        ctx = StepContext(
            job=job,
            outputs=self._decode_outputs(job),
            llm=self.llm,
            images=self.images,
            store=self.store,
            deadline=deadline,
        )
        started = time.monotonic()
        logger.info("pipeline.step_started", extra={"job_id": job_id, "step": step})
        try:
            result = handler(ctx)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.warning(
                "pipeline.step_failed",
                extra={"job_id": job_id, "step": step, "error": message},
                exc_info=True,
            )
            self._fail(job_id, step, message)
            raise StepFailedError(job_id, step, message) from exc

        try:
            advanced = jobs_service.advance_step(
                self.store,
                job_id,
                step,
                encode_step_output(result.output),
                ctx.tokens_used,
                result_document_id=result.result_document_id,
            )
        except Exception as exc:
            message = f"Could not record {step} output: {exc}"
            logger.warning(
                "pipeline.commit_failed",
                extra={"job_id": job_id, "step": step, "error": str(exc)},
                exc_info=True,
            )
            self._fail(job_id, step, message)
            raise StepFailedError(job_id, step, message) from exc

        logger.info(
            "pipeline.step_completed",
            extra={
                "job_id": job_id,
                "step": step,
                "tokens": ctx.tokens_used,
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return advanced

    def run_pipeline(self, job_id: str) -> Job:
        """Resume at the job's current step and run every remaining step in order."""

        deadline = time.monotonic() + self.timeout_seconds
        job = jobs_service.get_job(self.store, job_id)
        if job.is_terminal:
            raise JobStateError(f"Job {job.id} is {job.status}; no further steps can run")

        while not job.is_terminal:
            step = job.current_step
            if time.monotonic() >= deadline:
                message = f"Pipeline time budget of {self.timeout_seconds:.0f}s exhausted before step '{step}'"
                jobs_service.fail_job(self.store, job_id, message)
                raise StepFailedError(job_id, step, message)
            job = self.run_step(job_id, step, deadline=deadline)
        return job
