from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional

from pageforge.config import settings
from pageforge.db.enums import JobStatusEnum, PipelineStepEnum
from pageforge.errors import JobStateError, NotFoundError, ValidationFailed
from pageforge.storage.base import RecordStore, StoredRecord

logger = logging.getLogger(__name__)

JOBS = "jobs"
COMPLETE = "complete"
STEP_SEQUENCE: tuple[str, ...] = tuple(step.value for step in PipelineStepEnum)

STEP_LABELS: dict[str, str] = {
    "pending": "Waiting to start...",
    "research": "Deep Research: Analyzing website and extracting business info",
    "brand": "Brand Extraction: Extracting colors, fonts, and style guide",
    "strategy": "Page Strategy: Creating page outline and messaging",
    "copy": "Copy Generation: Writing compelling copy",
    "design": "Design Generation: Building beautiful, on-brand HTML",
    "factcheck": "Fact Checking: Verifying all claims and statistics",
    "assembly": "Final Assembly: QA checks and page finalization",
    "complete": "Generation complete!",
    "failed": "Generation failed",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Job:
    id: str
    page_type: str
    current_step: str
    status: str
    client_id: Optional[str] = None
    input_data: dict[str, Any] = field(default_factory=dict)
    step_outputs: dict[str, Any] = field(default_factory=dict)
    tokens_used: int = 0
    error: Optional[str] = None
    failed_step: Optional[str] = None
    result_document_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None
    version: Optional[str] = None

    @classmethod
    def from_record(cls, record: StoredRecord) -> "Job":
        data = record.data
        return cls(
            id=record.id,
            page_type=data["page_type"],
            current_step=data["current_step"],
            status=data["status"],
            client_id=data.get("client_id"),
            input_data=dict(data.get("input_data") or {}),
            step_outputs=dict(data.get("step_outputs") or {}),
            tokens_used=int(data.get("tokens_used") or 0),
            error=data.get("error"),
            failed_step=data.get("failed_step"),
            result_document_id=data.get("result_document_id"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            completed_at=data.get("completed_at"),
            version=record.version,
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "page_type": self.page_type,
            "current_step": self.current_step,
            "status": self.status,
            "input_data": self.input_data,
            "step_outputs": self.step_outputs,
            "tokens_used": self.tokens_used,
            "error": self.error,
            "failed_step": self.failed_step,
            "result_document_id": self.result_document_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatusEnum.complete.value, JobStatusEnum.failed.value)

    @property
    def steps_completed(self) -> list[str]:
        return [step for step in STEP_SEQUENCE if step in self.step_outputs]


def validate_step(step: str) -> str:
    if step not in STEP_SEQUENCE:
        raise ValidationFailed(f"Unknown pipeline step '{step}'. Expected one of: {', '.join(STEP_SEQUENCE)}")
    return step


def next_step(step: str) -> str:
    index = STEP_SEQUENCE.index(validate_step(step))
    if index + 1 >= len(STEP_SEQUENCE):
        return COMPLETE
    return STEP_SEQUENCE[index + 1]


def progress_percent(job: Job) -> int:
    if job.status == JobStatusEnum.complete.value or job.current_step == COMPLETE:
        return 100
    if job.current_step not in STEP_SEQUENCE:
        return 0
    return round(STEP_SEQUENCE.index(job.current_step) / len(STEP_SEQUENCE) * 100)


def step_label(step: str) -> str:
    return STEP_LABELS.get(step, step)


def estimated_cost(job: Job) -> float:
    return round(job.tokens_used / 1_000_000 * settings.TOKEN_COST_PER_MILLION_USD, 4)


def _write(store: RecordStore, job: Job) -> Job:
    # Every transition is guarded by the version read just before it.
    stored = store.put(JOBS, job.id, job.to_record(), precondition=job.version)
    return Job.from_record(stored)


def get_job(store: RecordStore, job_id: str) -> Job:
    record = store.get(JOBS, job_id)
    if record is None:
        raise NotFoundError("job", job_id)
    return Job.from_record(record)


def create_job(
    store: RecordStore,
    *,
    page_type: str,
    client_id: Optional[str] = None,
    input_data: Optional[dict[str, Any]] = None,
) -> Job:
    if not page_type or not page_type.strip():
        raise ValidationFailed("page_type is required")
    now = _now()
    job = Job(
        id=f"job_{secrets.token_hex(8)}",
        client_id=client_id,
        page_type=page_type.strip(),
        current_step=STEP_SEQUENCE[0],
        status=JobStatusEnum.pending.value,
        input_data=dict(input_data or {}),
        created_at=now,
        updated_at=now,
    )
    stored = store.insert(JOBS, job.id, job.to_record())
    logger.info("job.created", extra={"job_id": job.id, "page_type": job.page_type})
    return Job.from_record(stored)


def _require_runnable(job: Job, step: str) -> None:
    if job.is_terminal:
        raise JobStateError(f"Job {job.id} is {job.status}; no further steps can run")
    if step != job.current_step:
        raise JobStateError(f"Job {job.id} expects step '{job.current_step}', not '{step}'")


def begin_step(store: RecordStore, job_id: str, step: str) -> Job:
    validate_step(step)
    job = get_job(store, job_id)
    _require_runnable(job, step)
    updated = replace(job, status=JobStatusEnum.processing.value, updated_at=_now())
    return _write(store, updated)


def advance_step(
    store: RecordStore,
    job_id: str,
    step: str,
    output: dict[str, Any],
    resource_cost: int = 0,
    *,
    result_document_id: Optional[str] = None,
) -> Job:
    validate_step(step)
    if resource_cost < 0:
        raise ValidationFailed("resource_cost must not be negative")
    job = get_job(store, job_id)
    _require_runnable(job, step)

    following = next_step(step)
    now = _now()
    finished = following == COMPLETE
    updated = replace(
        job,
        step_outputs={**job.step_outputs, step: output},
        tokens_used=job.tokens_used + int(resource_cost),
        current_step=following,
        status=JobStatusEnum.complete.value if finished else JobStatusEnum.processing.value,
        result_document_id=result_document_id or job.result_document_id,
        updated_at=now,
        completed_at=now if finished else job.completed_at,
    )
    stored = _write(store, updated)
    logger.info(
        "job.step_advanced",
        extra={"job_id": job_id, "step": step, "next_step": following, "tokens": resource_cost},
    )
    return stored


def fail_job(store: RecordStore, job_id: str, error: str) -> Job:
    job = get_job(store, job_id)
    if job.is_terminal:
        raise JobStateError(f"Job {job.id} is already {job.status}")
    updated = replace(
        job,
        status=JobStatusEnum.failed.value,
        error=error or "Unknown error",
        failed_step=job.current_step if job.current_step != COMPLETE else None,
        updated_at=_now(),
    )
    stored = _write(store, updated)
    logger.warning("job.failed", extra={"job_id": job_id, "step": job.current_step, "error": error})
    return stored
