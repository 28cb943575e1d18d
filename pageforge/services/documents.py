from __future__ import annotations

import logging
import re
import secrets
from datetime import datetime, timezone
from typing import Any, Optional

from pageforge.db.enums import DocumentStatusEnum
from pageforge.errors import DuplicateKeyError, NotFoundError, PatchError, ValidationFailed
from pageforge.services.patch_engine import ChangeResult, HtmlDocument, PatchEngine
from pageforge.storage.base import RecordStore, StoredRecord

logger = logging.getLogger(__name__)

DOCUMENTS = "documents"
_SLUG_ATTEMPTS = 50


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def slugify(value: str) -> str:
    value = (value or "").strip().lower()
    value = re.sub(r"[^a-z0-9]+", "-", value)
    value = re.sub(r"-{2,}", "-", value).strip("-")
    return value or "page"


def new_document_id() -> str:
    return f"pg_{secrets.token_hex(8)}"


def document_id_for_job(job_id: str) -> str:
    """The one page a generation job may produce."""

    return f"pg_{job_id.removeprefix('job_')}"


def document_view(record: StoredRecord) -> dict[str, Any]:
    return {**record.data, "id": record.id, "version": record.version}


def get_document(store: RecordStore, document_id: str) -> StoredRecord:
    record = store.get(DOCUMENTS, document_id)
    if record is None:
        raise NotFoundError("document", document_id)
    return record


def get_document_by_slug(store: RecordStore, slug: str) -> Optional[StoredRecord]:
    return store.find(DOCUMENTS, "slug", slug)


def list_documents(
    store: RecordStore, *, client_id: Optional[str] = None, status: Optional[str] = None
) -> list[StoredRecord]:
    records = store.list_records(DOCUMENTS)
    if client_id is not None:
        records = [r for r in records if r.data.get("client_id") == client_id]
    if status is not None:
        records = [r for r in records if r.data.get("status") == status]
    return records


def generate_unique_slug(
    store: RecordStore, desired_slug: str, *, exclude_document_id: Optional[str] = None
) -> str:
    base = slugify(desired_slug)[:80].strip("-") or "page"
    for suffix in range(_SLUG_ATTEMPTS):
        slug = base if suffix == 0 else f"{base}-{suffix + 1}"
        existing = store.find(DOCUMENTS, "slug", slug)
        if existing is None or existing.id == exclude_document_id:
            return slug
    return f"{base}-{secrets.token_hex(3)}"


def _require_document_html(html_content: str) -> None:
    if not HtmlDocument(html_content).has_root_marker():
        raise ValidationFailed("html_content must be a complete HTML document (<!DOCTYPE html> or <html>)")


def create_document(
    store: RecordStore,
    *,
    name: str,
    html_content: str,
    slug: Optional[str] = None,
    client_id: Optional[str] = None,
    page_type: Optional[str] = None,
    status: str = DocumentStatusEnum.draft.value,
    meta_title: Optional[str] = None,
    meta_description: Optional[str] = None,
    generation_job_id: Optional[str] = None,
    factcheck_score: Optional[float] = None,
    document_id: Optional[str] = None,
    desired_slug: Optional[str] = None,
) -> StoredRecord:
    if not name or not name.strip():
        raise ValidationFailed("name is required")
    _require_document_html(html_content)

    now = _now()
    document_id = document_id or new_document_id()
    record: dict[str, Any] = {
        "id": document_id,
        "name": name.strip(),
        "html_content": html_content,
        "client_id": client_id,
        "page_type": page_type,
        "status": status,
        "views": 0,
        "leads": 0,
        "meta_title": meta_title or name.strip(),
        "meta_description": meta_description or "",
        "generation_job_id": generation_job_id,
        "factcheck_score": factcheck_score,
        "created_at": now,
        "updated_at": now,
        "published_at": now if status == DocumentStatusEnum.published.value else None,
    }
    explicit_slug = slug is not None
    desired = slug if explicit_slug else (desired_slug or name)
    for _ in range(3):
        record["slug"] = slugify(desired) if explicit_slug else generate_unique_slug(store, desired)
        try:
            stored = store.insert(DOCUMENTS, document_id, record)
        except DuplicateKeyError as exc:
            # An explicit slug is the caller's choice; a generated one lost a race and is retried.
            if explicit_slug or exc.field != "slug":
                raise
            continue
        logger.info("document.created", extra={"document_id": document_id, "slug": record["slug"]})
        return stored
    raise DuplicateKeyError(DOCUMENTS, "slug", record["slug"])


def update_document(
    store: RecordStore,
    document_id: str,
    *,
    name: Optional[str] = None,
    slug: Optional[str] = None,
    html_content: Optional[str] = None,
    status: Optional[str] = None,
    meta_title: Optional[str] = None,
    meta_description: Optional[str] = None,
) -> StoredRecord:
    if html_content is not None:
        _require_document_html(html_content)
    if name is not None and not name.strip():
        raise ValidationFailed("name must not be empty")

    def mutate(data: dict[str, Any]) -> dict[str, Any]:
        if name is not None:
            data["name"] = name.strip()
        if slug is not None:
            data["slug"] = slugify(slug)
        if html_content is not None:
            data["html_content"] = html_content
        if meta_title is not None:
            data["meta_title"] = meta_title
        if meta_description is not None:
            data["meta_description"] = meta_description
        if status is not None and status != data.get("status"):
            data["status"] = status
            data["published_at"] = _now() if status == DocumentStatusEnum.published.value else None
        data["updated_at"] = _now()
        return data

    return store.update(DOCUMENTS, document_id, mutate)


def increment_counter(store: RecordStore, document_id: str, counter: str) -> StoredRecord:
    def mutate(data: dict[str, Any]) -> dict[str, Any]:
        data[counter] = int(data.get(counter) or 0) + 1
        return data

    return store.update(DOCUMENTS, document_id, mutate, attempts=5)


def apply_change_request(
    store: RecordStore, engine: PatchEngine, document_id: str, instruction: str
) -> tuple[ChangeResult, StoredRecord]:
    """
    Run a change request against the stored page and commit it.

    The write carries the version read before the engine ran; a concurrent edit
    surfaces as PreconditionFailed instead of being overwritten.
    """

    if not instruction or not instruction.strip():
        raise ValidationFailed("instruction is required")
    record = get_document(store, document_id)
    document = HtmlDocument(record.data.get("html_content") or "")

    result = engine.apply_change(document, instruction)
    if result.no_op:
        return result, record
    if not result.applied:
        raise PatchError(
            result.tier,
            f"{result.description} None of the proposed edits matched the page.",
            tokens_used=result.tokens_used,
        )
    if not result.document.has_root_marker():
        raise PatchError(result.tier, "The edited page is no longer a complete HTML document.", result.tokens_used)

    updated = {**record.data, "html_content": result.document.html, "updated_at": _now()}
    stored = store.put(DOCUMENTS, document_id, updated, precondition=record.version)
    logger.info(
        "document.change_applied",
        extra={
            "document_id": document_id,
            "tier": result.tier,
            "change_count": result.change_count,
            "tokens": result.tokens_used,
        },
    )
    return result, stored
