from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Response

from pageforge.services import tracking
from pageforge.storage import RecordStore, get_store

router = APIRouter(tags=["dashboard"])


@router.get("/leads")
def list_leads(pageId: Optional[str] = None, store: RecordStore = Depends(get_store)) -> list[dict[str, Any]]:
    return tracking.list_leads(store, document_id=pageId)


@router.get("/leads/export")
def export_leads(pageId: Optional[str] = None, store: RecordStore = Depends(get_store)) -> Response:
    body = tracking.leads_csv(tracking.list_leads(store, document_id=pageId))
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=leads.csv"},
    )


@router.get("/stats")
def stats(store: RecordStore = Depends(get_store)) -> dict[str, Any]:
    return tracking.dashboard_stats(store)
