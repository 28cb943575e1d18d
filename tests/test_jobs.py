import pytest

from pageforge.errors import JobStateError, NotFoundError, PreconditionFailed, ValidationFailed
from pageforge.services import jobs as jobs_service


def test_create_job_starts_pending_at_research(store):
    job = jobs_service.create_job(store, page_type="webinar", client_id="client-1", input_data={"companyName": "Acme"})

    assert job.id.startswith("job_")
    assert job.status == "pending"
    assert job.current_step == "research"
    assert job.tokens_used == 0
    assert job.step_outputs == {}
    assert job.input_data == {"companyName": "Acme"}
    assert jobs_service.progress_percent(job) == 0


def test_create_job_requires_page_type(store):
    with pytest.raises(ValidationFailed):
        jobs_service.create_job(store, page_type="  ")


def test_steps_advance_in_order_and_accumulate_tokens(store):
    job = jobs_service.create_job(store, page_type="sales")

    for index, step in enumerate(jobs_service.STEP_SEQUENCE):
        jobs_service.begin_step(store, job.id, step)
        job = jobs_service.advance_step(store, job.id, step, {"step": step}, 10)
        assert job.steps_completed == list(jobs_service.STEP_SEQUENCE[: index + 1])

    assert job.status == "complete"
    assert job.current_step == "complete"
    assert job.tokens_used == 70
    assert job.completed_at is not None
    assert jobs_service.progress_percent(job) == 100


def test_progress_and_label_follow_current_step(store):
    job = jobs_service.create_job(store, page_type="sales")
    job = jobs_service.advance_step(store, job.id, "research", {"company_name": "Acme"}, 5)

    assert job.current_step == "brand"
    assert job.status == "processing"
    assert jobs_service.progress_percent(job) == round(1 / 7 * 100)
    assert jobs_service.step_label(job.current_step).startswith("Brand Extraction")


def test_running_wrong_step_is_rejected(store):
    job = jobs_service.create_job(store, page_type="sales")

    with pytest.raises(JobStateError):
        jobs_service.begin_step(store, job.id, "copy")
    with pytest.raises(JobStateError):
        jobs_service.advance_step(store, job.id, "brand", {}, 0)


def test_unknown_step_and_negative_cost_are_validation_errors(store):
    job = jobs_service.create_job(store, page_type="sales")

    with pytest.raises(ValidationFailed):
        jobs_service.begin_step(store, job.id, "deploy")
    with pytest.raises(ValidationFailed):
        jobs_service.advance_step(store, job.id, "research", {}, -1)


def test_failure_is_absorbing(store):
    job = jobs_service.create_job(store, page_type="sales")
    jobs_service.advance_step(store, job.id, "research", {}, 3)

    failed = jobs_service.fail_job(store, job.id, "model timed out")

    assert failed.status == "failed"
    assert failed.failed_step == "brand"
    assert failed.error == "model timed out"
    assert failed.tokens_used == 3
    with pytest.raises(JobStateError):
        jobs_service.begin_step(store, job.id, "brand")
    with pytest.raises(JobStateError):
        jobs_service.advance_step(store, job.id, "brand", {}, 0)
    with pytest.raises(JobStateError):
        jobs_service.fail_job(store, job.id, "again")


def test_stale_job_write_is_rejected(store):
    job = jobs_service.create_job(store, page_type="sales")
    jobs_service.begin_step(store, job.id, "research")

    # `job` still carries the version read before begin_step.
    with pytest.raises(PreconditionFailed):
        store.put(jobs_service.JOBS, job.id, job.to_record(), precondition=job.version)


def test_missing_job_raises_not_found(store):
    with pytest.raises(NotFoundError):
        jobs_service.get_job(store, "job_missing")


def test_estimated_cost_uses_token_rate(store, monkeypatch):
    monkeypatch.setattr(jobs_service.settings, "TOKEN_COST_PER_MILLION_USD", 10.0)
    job = jobs_service.create_job(store, page_type="sales")
    job = jobs_service.advance_step(store, job.id, "research", {}, 500_000)

    assert jobs_service.estimated_cost(job) == 5.0
