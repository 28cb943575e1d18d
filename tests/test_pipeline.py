import json

import pytest

from pageforge.errors import CollaboratorError, JobStateError, StepFailedError
from pageforge.llm.client import LLMClientConfigError, LLMResult
from pageforge.services import documents as documents_service
from pageforge.services import jobs as jobs_service
from pageforge.services.pipeline import PipelineRunner

RESEARCH = {
    "company_name": "Acme Analytics",
    "industry": "SaaS",
    "tagline": "Know your numbers",
    "value_propositions": ["Real-time dashboards"],
    "testimonials": [{"quote": "Changed how we work", "author": "Dana"}],
    "key_claims": ["Used by 5,000 teams"],
}
BRAND = {
    "colors": {"primary": "#1d4ed8", "secondary": "#0f172a", "accent": "#f59e0b"},
    "typography": {"heading_font": "Inter", "body_font": "Inter"},
    "brand_voice": {"tone": "Confident"},
}
STRATEGY = {"page_title": "Acme Analytics", "sections": [{"name": "Benefits"}]}
COPY = {
    "headlines": {"hero_headline": "See every number that matters", "hero_subheadline": "Dashboards in minutes"},
    "hero": {"above_fold_text": "Connect your data and go.", "primary_cta_text": "Start free"},
    "body_sections": [{"headline": "Fast setup", "body_copy": "Five minutes to first chart."}],
    "ctas": {"primary": "Start free", "final": "Ready to see clearly?"},
    "meta": {"title": "Acme Analytics | Dashboards", "description": "Real-time dashboards for teams."},
}
DESIGN = {"HEADLINE": "See every number that matters", "CTA_URL": "https://evil.example.com"}
FACTCHECK = {"verified_claims": ["Used by 5,000 teams"], "overall_score": 92, "recommendation": "approve"}


def _queue_full_run(fake_llm):
    fake_llm.queue(
        LLMResult(text=json.dumps(RESEARCH), tokens_used=300, citations=[{"url": "https://acme.test", "title": "Acme"}])
    )
    fake_llm.queue(BRAND, STRATEGY, COPY, DESIGN, FACTCHECK, tokens=100)


def _create_job(store, **inputs):
    return jobs_service.create_job(
        store,
        page_type="sales",
        client_id="client-1",
        input_data={"companyName": "Acme Analytics", "ctaUrl": "https://acme.test/signup", **inputs},
    )


def test_full_pipeline_creates_tracked_document(store, fake_llm, fake_images):
    _queue_full_run(fake_llm)
    job = _create_job(store)

    finished = PipelineRunner(store, fake_llm, fake_images).run_pipeline(job.id)

    assert finished.status == "complete"
    assert finished.steps_completed == list(jobs_service.STEP_SEQUENCE)
    assert finished.tokens_used == 300 + 5 * 100
    assert [call["kind"] for call in fake_llm.calls] == ["search"] + ["generate"] * 5

    document = documents_service.get_document(store, finished.result_document_id)
    html = document.data["html_content"]
    assert html.startswith("<!DOCTYPE html>")
    assert "See every number that matters" in html
    assert 'href="https://acme.test/signup"' in html
    assert "evil.example.com" not in html
    assert "pageforge-tracking" in html
    assert "{{" not in html
    assert document.data["status"] == "draft"
    assert document.data["factcheck_score"] == 92
    assert document.data["generation_job_id"] == job.id
    assert document.data["slug"].startswith("sales-acme-analytics-")

    research = finished.step_outputs["research"]
    assert research["citations"] == [{"url": "https://acme.test", "title": "Acme"}]
    assert finished.step_outputs["assembly"]["pageId"] == document.id
    assert fake_images.prompts == []


def test_each_step_sees_prior_outputs(store, fake_llm, fake_images):
    _queue_full_run(fake_llm)
    job = _create_job(store)
    runner = PipelineRunner(store, fake_llm, fake_images)

    runner.run_step(job.id, "research")
    runner.run_step(job.id, "brand")

    brand_prompt = fake_llm.calls[1]["prompt"]
    assert "Acme Analytics" in brand_prompt
    assert "SaaS" in brand_prompt


def test_step_out_of_order_is_rejected_before_any_call(store, fake_llm, fake_images):
    job = _create_job(store)

    with pytest.raises(JobStateError):
        PipelineRunner(store, fake_llm, fake_images).run_step(job.id, "copy")

    assert fake_llm.calls == []


def test_collaborator_failure_fails_the_job(store, fake_llm, fake_images):
    fake_llm.queue(RESEARCH, tokens=50)
    fake_llm.queue(CollaboratorError("rate limited", service="llm", status_code=429, retryable=True))
    job = _create_job(store)
    runner = PipelineRunner(store, fake_llm, fake_images)

    with pytest.raises(StepFailedError) as excinfo:
        runner.run_pipeline(job.id)

    assert excinfo.value.step == "brand"
    failed = jobs_service.get_job(store, job.id)
    assert failed.status == "failed"
    assert failed.failed_step == "brand"
    assert "rate limited" in failed.error
    assert failed.steps_completed == ["research"]
    assert failed.tokens_used == 50
    with pytest.raises(JobStateError):
        runner.run_step(job.id, "brand")


def test_research_falls_back_when_search_is_unavailable(store, fake_llm, fake_images):
    fake_llm.queue(LLMClientConfigError("no search provider", service="llm"), RESEARCH)
    job = _create_job(store)

    PipelineRunner(store, fake_llm, fake_images).run_step(job.id, "research")

    assert [call["kind"] for call in fake_llm.calls] == ["search", "generate"]
    assert jobs_service.get_job(store, job.id).step_outputs["research"]["company_name"] == "Acme Analytics"


def test_unparseable_step_response_is_kept_raw(store, fake_llm, fake_images):
    fake_llm.queue("Sorry, I cannot produce JSON today.")
    job = _create_job(store)

    advanced = PipelineRunner(store, fake_llm, fake_images).run_step(job.id, "research")

    assert advanced.step_outputs["research"]["raw"] == "Sorry, I cannot produce JSON today."
    assert advanced.current_step == "brand"


def test_hero_image_is_embedded_when_requested(store, fake_llm, fake_images):
    _queue_full_run(fake_llm)
    job = _create_job(store, generateHeroImage=True)

    finished = PipelineRunner(store, fake_llm, fake_images).run_pipeline(job.id)

    html = documents_service.get_document(store, finished.result_document_id).data["html_content"]
    assert "data:image/png;base64," in html
    assert finished.step_outputs["design"]["hero_image"]["mime_type"] == "image/png"
    assert len(fake_images.prompts) == 1


def test_hero_image_refusal_does_not_fail_design(store, fake_llm, refusing_images):
    _queue_full_run(fake_llm)
    job = _create_job(store, generateHeroImage=True)

    finished = PipelineRunner(store, fake_llm, refusing_images).run_pipeline(job.id)

    assert finished.status == "complete"
    assert finished.step_outputs["design"]["hero_image"] == {"refused": "SAFETY"}


def test_pipeline_time_budget_exhaustion_fails_job(store, fake_llm, fake_images):
    job = _create_job(store)
    runner = PipelineRunner(store, fake_llm, fake_images, timeout_seconds=-1.0)

    with pytest.raises(StepFailedError):
        runner.run_pipeline(job.id)

    failed = jobs_service.get_job(store, job.id)
    assert failed.status == "failed"
    assert failed.failed_step == "research"
    assert fake_llm.calls == []


def _run_until_assembly(runner, job_id):
    for step in jobs_service.STEP_SEQUENCE[:-1]:
        runner.run_step(job_id, step)


def _documents_for(store, job_id):
    return [record for record in store.list_records("documents") if record.data["generation_job_id"] == job_id]


def test_commit_failure_fails_the_job(store, fake_llm, fake_images, monkeypatch):
    _queue_full_run(fake_llm)
    job = _create_job(store)
    runner = PipelineRunner(store, fake_llm, fake_images)
    _run_until_assembly(runner, job.id)

    def store_unavailable(*args, **kwargs):
        raise CollaboratorError("file store 502", service="filestore", status_code=502)

    monkeypatch.setattr(jobs_service, "advance_step", store_unavailable)

    with pytest.raises(StepFailedError) as excinfo:
        runner.run_step(job.id, "assembly")

    assert excinfo.value.step == "assembly"
    failed = jobs_service.get_job(store, job.id)
    assert failed.status == "failed"
    assert failed.failed_step == "assembly"
    assert "file store 502" in failed.error
    assert len(_documents_for(store, job.id)) == 1


def test_retried_assembly_reuses_its_document(store, fake_llm, fake_images, monkeypatch):
    _queue_full_run(fake_llm)
    job = _create_job(store)
    runner = PipelineRunner(store, fake_llm, fake_images)
    _run_until_assembly(runner, job.id)

    real_advance = jobs_service.advance_step
    attempts = []

    def flaky_advance(*args, **kwargs):
        attempts.append(1)
        if len(attempts) == 1:
            raise CollaboratorError("file store 502", service="filestore", status_code=502)
        return real_advance(*args, **kwargs)

    def cannot_record_failure(*args, **kwargs):
        raise CollaboratorError("file store 502", service="filestore", status_code=502)

    monkeypatch.setattr(jobs_service, "advance_step", flaky_advance)
    monkeypatch.setattr(jobs_service, "fail_job", cannot_record_failure)

    with pytest.raises(StepFailedError):
        runner.run_step(job.id, "assembly")
    assert jobs_service.get_job(store, job.id).current_step == "assembly"

    finished = runner.run_step(job.id, "assembly")

    documents = _documents_for(store, job.id)
    assert finished.status == "complete"
    assert len(documents) == 1
    assert finished.result_document_id == documents[0].id
    assert finished.step_outputs["assembly"]["slug"] == documents[0].data["slug"]
