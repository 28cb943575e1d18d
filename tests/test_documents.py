import pytest

from pageforge.errors import DuplicateKeyError, PatchError, PreconditionFailed, ValidationFailed
from pageforge.services import documents as documents_service
from pageforge.services.patch_engine import TIER_HEURISTIC, ChangeResult, HtmlDocument, PatchEngine

PAGE = (
    "<!DOCTYPE html><html><head><title>Acme</title></head><body>"
    '<h1>Hello</h1><a class="btn" href="#signup">Go</a></body></html>'
)


def test_slugify():
    assert documents_service.slugify("  Acme Spring Sale!! 2025 ") == "acme-spring-sale-2025"
    assert documents_service.slugify("***") == "page"


def test_generated_slugs_are_unique(store):
    first = documents_service.create_document(store, name="Spring Sale", html_content=PAGE)
    second = documents_service.create_document(store, name="Spring Sale", html_content=PAGE)

    assert first.data["slug"] == "spring-sale"
    assert second.data["slug"] == "spring-sale-2"


def test_explicit_duplicate_slug_is_rejected(store):
    documents_service.create_document(store, name="One", html_content=PAGE, slug="launch")

    with pytest.raises(DuplicateKeyError):
        documents_service.create_document(store, name="Two", html_content=PAGE, slug="launch")


def test_document_requires_complete_html(store):
    with pytest.raises(ValidationFailed):
        documents_service.create_document(store, name="Fragment", html_content="<div>hi</div>")


def test_publish_sets_published_at(store):
    record = documents_service.create_document(store, name="Launch", html_content=PAGE)

    published = documents_service.update_document(store, record.id, status="published")
    unpublished = documents_service.update_document(store, record.id, status="draft")

    assert published.data["status"] == "published"
    assert published.data["published_at"] is not None
    assert unpublished.data["published_at"] is None


def test_change_request_commits_new_html(store, fake_llm):
    record = documents_service.create_document(store, name="Launch", html_content=PAGE)

    result, stored = documents_service.apply_change_request(
        store, PatchEngine(fake_llm), record.id, 'replace "Hello" with "Welcome"'
    )

    assert result.tier == TIER_HEURISTIC
    assert "<h1>Welcome</h1>" in stored.data["html_content"]
    assert stored.version != record.version


def test_change_request_already_satisfied_leaves_document_untouched(store, fake_llm):
    record = documents_service.create_document(store, name="Launch", html_content=PAGE)

    result, stored = documents_service.apply_change_request(
        store, PatchEngine(fake_llm), record.id, "Point the buttons to #signup"
    )

    assert result.no_op is True
    assert stored.version == record.version


def test_change_request_with_no_matching_patches_fails(store, fake_llm):
    record = documents_service.create_document(store, name="Launch", html_content=PAGE)
    fake_llm.queue({"summary": "Tweaked", "patches": [{"search": "not here", "replace": "x"}]})

    with pytest.raises(PatchError) as excinfo:
        documents_service.apply_change_request(store, PatchEngine(fake_llm), record.id, "Make it friendlier")

    assert excinfo.value.tokens_used == 100
    assert store.get("documents", record.id).data["html_content"] == PAGE


class ConcurrentEditEngine:
    """Commits a competing edit while the change request is being computed."""

    def __init__(self, store, document_id):
        self.store = store
        self.document_id = document_id

    def apply_change(self, document, instruction):
        documents_service.update_document(self.store, self.document_id, name="Edited elsewhere")
        return ChangeResult(
            document=document.with_html(document.html.replace("Hello", "Hi")),
            description="Changed greeting",
            applied=True,
            tier=TIER_HEURISTIC,
            change_count=1,
        )


def test_concurrent_change_request_is_a_conflict(store):
    record = documents_service.create_document(store, name="Launch", html_content=PAGE)

    with pytest.raises(PreconditionFailed):
        documents_service.apply_change_request(
            store, ConcurrentEditEngine(store, record.id), record.id, "Say hi"
        )

    current = store.get("documents", record.id)
    assert current.data["name"] == "Edited elsewhere"
    assert "<h1>Hello</h1>" in current.data["html_content"]


def test_counters_increment(store):
    record = documents_service.create_document(store, name="Launch", html_content=PAGE)

    documents_service.increment_counter(store, record.id, "views")
    updated = documents_service.increment_counter(store, record.id, "views")

    assert updated.data["views"] == 2
    assert HtmlDocument(updated.data["html_content"]).has_root_marker()
