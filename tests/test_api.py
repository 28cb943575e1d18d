from fastapi.testclient import TestClient

from pageforge.errors import CollaboratorError
from pageforge.main import app

PAGE = (
    "<!DOCTYPE html><html><head><title>Launch</title></head><body>"
    '<h1>Hello</h1><a class="btn cta" href="#signup">Join</a></body></html>'
)


def test_health_endpoints(api_client):
    health = api_client.get("/health")
    store_health = api_client.get("/health/store")

    assert health.status_code == 200
    assert health.json() == {"ok": True}
    assert store_health.json() == {"store": "relational"}


def test_create_job_and_read_status(api_client):
    resp = api_client.post(
        "/pipeline/jobs",
        json={"pageType": "webinar", "clientId": "client-1", "companyName": "Acme", "extra": {"tone": "playful"}},
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "pending"
    assert body["currentStep"] == "research"

    status = api_client.get(f"/pipeline/jobs/{body['jobId']}").json()
    assert status["progressPercent"] == 0
    assert status["stepLabel"].startswith("Deep Research")
    assert status["tokensUsed"] == 0
    assert status["stepsCompleted"] == []
    assert status["result"] is None


def test_create_job_requires_page_type(api_client):
    resp = api_client.post("/pipeline/jobs", json={"companyName": "Acme"})
    assert resp.status_code == 422


def test_unknown_job_is_404(api_client):
    assert api_client.get("/pipeline/jobs/job_nope").status_code == 404


def test_run_step_endpoint_and_ordering(api_client, fake_llm):
    job_id = api_client.post("/pipeline/jobs", json={"pageType": "sales"}).json()["jobId"]
    fake_llm.queue({"company_name": "Acme"}, tokens=42)

    out_of_order = api_client.post(f"/pipeline/jobs/{job_id}/steps/brand")
    unknown = api_client.post(f"/pipeline/jobs/{job_id}/steps/deploy")
    ran = api_client.post(f"/pipeline/jobs/{job_id}/steps/research")

    assert out_of_order.status_code == 409
    assert unknown.status_code == 400
    assert ran.status_code == 200
    assert ran.json()["currentStep"] == "brand"
    assert ran.json()["tokensUsed"] == 42
    assert ran.json()["stepsCompleted"] == ["research"]


def test_step_failure_returns_502_with_step(api_client, fake_llm):
    job_id = api_client.post("/pipeline/jobs", json={"pageType": "sales"}).json()["jobId"]
    fake_llm.queue(CollaboratorError("upstream down", service="llm", status_code=503))

    resp = api_client.post(f"/pipeline/jobs/{job_id}/run")

    assert resp.status_code == 502
    assert resp.json()["success"] is False
    assert resp.json()["step"] == "research"
    status = api_client.get(f"/pipeline/jobs/{job_id}").json()
    assert status["status"] == "failed"
    assert status["failedStep"] == "research"
    assert status["stepLabel"] == "Generation failed"


def test_document_crud_and_publish(api_client):
    created = api_client.post("/documents", json={"name": "Launch", "htmlContent": PAGE, "clientId": "c1"})
    assert created.status_code == 201
    doc = created.json()
    assert doc["slug"] == "launch"
    assert doc["status"] == "draft"

    listed = api_client.get("/documents", params={"clientId": "c1"}).json()
    assert [item["id"] for item in listed] == [doc["id"]]
    assert "html_content" not in listed[0]

    published = api_client.patch(f"/documents/{doc['id']}", json={"status": "published"})
    assert published.json()["status"] == "published"
    assert published.json()["published_at"]

    assert api_client.get(f"/documents/{doc['id']}").json()["html_content"] == PAGE


def test_document_validation_and_conflicts(api_client):
    fragment = api_client.post("/documents", json={"name": "Bad", "htmlContent": "<div>no root</div>"})
    api_client.post("/documents", json={"name": "One", "htmlContent": PAGE, "slug": "taken"})
    duplicate = api_client.post("/documents", json={"name": "Two", "htmlContent": PAGE, "slug": "taken"})

    assert fragment.status_code == 400
    assert duplicate.status_code == 409
    assert api_client.get("/documents/pg_missing").status_code == 404


def test_change_request_heuristic(api_client, fake_llm):
    doc = api_client.post("/documents", json={"name": "Launch", "htmlContent": PAGE}).json()

    resp = api_client.post(
        f"/documents/{doc['id']}/changes",
        json={"instruction": "Change the CTA button to https://acme.test/join"},
    )

    body = resp.json()
    assert resp.status_code == 200
    assert body["success"] is True
    assert body["tier"] == "heuristic"
    assert body["changeCount"] == 1
    assert body["tokensUsed"] == 0
    stored = api_client.get(f"/documents/{doc['id']}").json()
    assert 'href="https://acme.test/join"' in stored["html_content"]
    assert fake_llm.calls == []


def test_change_request_exhausted_returns_422(api_client, fake_llm):
    doc = api_client.post("/documents", json={"name": "Launch", "htmlContent": PAGE}).json()
    fake_llm.queue("no idea")

    resp = api_client.post(f"/documents/{doc['id']}/changes", json={"instruction": "Make it pop"})

    assert resp.status_code == 422
    assert resp.json()["success"] is False
    assert resp.json()["tier"] == "full_replacement"
    assert resp.json()["guidance"]


def test_change_request_conflict_is_retryable(api_client, store, monkeypatch):
    from pageforge.services import documents as documents_service

    doc = api_client.post("/documents", json={"name": "Launch", "htmlContent": PAGE}).json()
    original_put = store.put
    raced = []

    def racing_put(collection, record_id, record, precondition=None):
        # Another editor commits between our read and our guarded write, once.
        if precondition is not None and collection == "documents" and not raced:
            raced.append(record_id)
            documents_service.update_document(store, record_id, name="Someone else")
        return original_put(collection, record_id, record, precondition=precondition)

    monkeypatch.setattr(store, "put", racing_put)
    resp = api_client.post(f"/documents/{doc['id']}/changes", json={"instruction": 'replace "Hello" with "Hi"'})

    assert resp.status_code == 409
    assert resp.json()["retryable"] is True


def test_unhandled_errors_are_500(override_dependencies, monkeypatch):
    from pageforge.routers import documents as documents_router

    def explode(*_args, **_kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(documents_router.documents_service, "list_documents", explode)
    with TestClient(app, raise_server_exceptions=False) as client:
        resp = client.get("/documents")

    assert resp.status_code == 500
    assert resp.json() == {"detail": "Internal server error"}
