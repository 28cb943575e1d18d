from __future__ import annotations

import html
import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import HTMLResponse
from pydantic import ValidationError

from pageforge.config import settings
from pageforge.db.enums import DocumentStatusEnum, PageEventKindEnum
from pageforge.schemas.documents import PublicEventRequest
from pageforge.services import documents as documents_service
from pageforge.services import tracking
from pageforge.storage import RecordStore, get_store

logger = logging.getLogger(__name__)

router = APIRouter(tags=["public"])

_NOT_FOUND_PAGE = """<!DOCTYPE html>
<html lang="en">
<head><meta charset="utf-8"><meta name="viewport" content="width=device-width, initial-scale=1"><title>Page not found</title></head>
<body style="font-family:system-ui,sans-serif;display:flex;align-items:center;justify-content:center;min-height:100vh;margin:0;background:#f9fafb;color:#111827;">
<div style="text-align:center;"><h1 style="font-size:48px;margin:0;">404</h1><p>No page is published at <code>/p/{slug}</code>.</p></div>
</body>
</html>"""

# Path segment -> event kind recorded for it.
_EVENT_KINDS = {
    "track": PageEventKindEnum.views.value,
    "submit": PageEventKindEnum.leads.value,
    "convert": PageEventKindEnum.conversions.value,
}


@router.get("/p/{slug}", response_class=HTMLResponse)
def serve_page(slug: str, edit: bool = False, store: RecordStore = Depends(get_store)) -> HTMLResponse:
    record = documents_service.get_document_by_slug(store, slug)
    if record is None:
        return HTMLResponse(_NOT_FOUND_PAGE.replace("{slug}", html.escape(slug)), status_code=404)

    page_html = record.data.get("html_content") or ""
    page_html = tracking.inject_tracking(page_html, record.id, settings.PUBLIC_BASE_URL)
    if edit:
        page_html = tracking.inject_live_edit(page_html, record.id, settings.PUBLIC_BASE_URL)

    response = HTMLResponse(page_html)
    if edit or record.data.get("status") != DocumentStatusEnum.published.value:
        response.headers["X-Robots-Tag"] = "noindex, nofollow"
    return response


async def _read_event(request: Request) -> dict[str, Any]:
    """Lenient body parsing: a malformed beacon still counts as an event."""

    raw = await request.body()
    try:
        body = json.loads(raw) if raw else {}
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    try:
        event = PublicEventRequest.model_validate(body)
    except ValidationError:
        logger.info("public.event_body_invalid", extra={"path": request.url.path})
        event = PublicEventRequest()
    payload = event.model_dump(exclude_none=True)
    payload["userAgent"] = request.headers.get("user-agent", "")
    return payload


@router.post("/public/{action}/{page_id}")
async def public_event(
    action: str,
    page_id: str,
    request: Request,
    store: RecordStore = Depends(get_store),
) -> dict[str, Any]:
    kind = _EVENT_KINDS.get(action)
    if kind is None:
        return {"ok": False, "error": f"Unknown event '{action}'"}
    payload = await _read_event(request)
    try:
        document_id = await run_in_threadpool(tracking.record_event, store, page_id, kind, payload)
    except Exception:
        # Landing pages fire these as beacons; a storage failure must not break the page.
        logger.exception("public.event_failed", extra={"page_ref": page_id, "kind": kind})
        return {"ok": False}
    if document_id is None:
        return {"ok": False, "error": "Page not found"}
    return {"ok": True}
