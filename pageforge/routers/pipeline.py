from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, status

from pageforge.deps import get_pipeline_runner
from pageforge.schemas.jobs import JobCreateRequest, JobCreateResponse, JobStatusResponse
from pageforge.services import jobs as jobs_service
from pageforge.services.jobs import Job
from pageforge.services.pipeline import PipelineRunner
from pageforge.storage import RecordStore, get_store

router = APIRouter(prefix="/pipeline", tags=["pipeline"])


def _job_status(job: Job) -> JobStatusResponse:
    result: dict[str, Any] | None = None
    if job.status == jobs_service.COMPLETE:
        assembly = job.step_outputs.get("assembly") or {}
        result = {
            "documentId": job.result_document_id,
            "pageName": assembly.get("pageName"),
            "slug": assembly.get("slug"),
            "factcheckScore": assembly.get("factcheckScore"),
            "factcheckRecommendation": assembly.get("factcheckRecommendation"),
        }
    label_key = job.status if job.is_terminal else job.current_step
    return JobStatusResponse(
        jobId=job.id,
        currentStep=job.current_step,
        status=job.status,
        progressPercent=jobs_service.progress_percent(job),
        stepLabel=jobs_service.step_label(label_key),
        tokensUsed=job.tokens_used,
        cost=jobs_service.estimated_cost(job),
        error=job.error,
        failedStep=job.failed_step,
        stepsCompleted=job.steps_completed,
        result=result,
    )


@router.post("/jobs", status_code=status.HTTP_201_CREATED, response_model=JobCreateResponse)
def create_job(payload: JobCreateRequest, store: RecordStore = Depends(get_store)) -> JobCreateResponse:
    inputs = payload.model_dump(exclude={"pageType", "clientId", "extra"}, exclude_none=True)
    inputs.update(payload.extra)
    job = jobs_service.create_job(
        store,
        page_type=payload.pageType,
        client_id=payload.clientId,
        input_data=inputs,
    )
    return JobCreateResponse(jobId=job.id, status=job.status, currentStep=job.current_step)


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
def get_job_status(job_id: str, store: RecordStore = Depends(get_store)) -> JobStatusResponse:
    return _job_status(jobs_service.get_job(store, job_id))


@router.post("/jobs/{job_id}/steps/{step}", response_model=JobStatusResponse)
def run_step(
    job_id: str,
    step: str,
    runner: PipelineRunner = Depends(get_pipeline_runner),
) -> JobStatusResponse:
    return _job_status(runner.run_step(job_id, step))


@router.post("/jobs/{job_id}/run", response_model=JobStatusResponse)
def run_pipeline(job_id: str, runner: PipelineRunner = Depends(get_pipeline_runner)) -> JobStatusResponse:
    return _job_status(runner.run_pipeline(job_id))
