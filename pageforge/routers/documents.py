from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, status
from fastapi.encoders import jsonable_encoder

from pageforge.deps import get_patch_engine
from pageforge.schemas.documents import (
    ChangeRequest,
    ChangeResponse,
    DocumentCreateRequest,
    DocumentUpdateRequest,
)
from pageforge.services import documents as documents_service
from pageforge.services import tracking
from pageforge.services.patch_engine import PatchEngine
from pageforge.storage import RecordStore, get_store

router = APIRouter(prefix="/documents", tags=["documents"])


def _summary(view: dict[str, Any]) -> dict[str, Any]:
    view.pop("html_content", None)
    return view


@router.get("")
def list_documents(
    clientId: Optional[str] = None,
    status: Optional[str] = None,
    store: RecordStore = Depends(get_store),
) -> list:
    records = documents_service.list_documents(store, client_id=clientId, status=status)
    return jsonable_encoder([_summary(documents_service.document_view(record)) for record in records])


@router.post("", status_code=status.HTTP_201_CREATED)
def create_document(payload: DocumentCreateRequest, store: RecordStore = Depends(get_store)):
    record = documents_service.create_document(
        store,
        name=payload.name,
        html_content=payload.htmlContent,
        slug=payload.slug,
        client_id=payload.clientId,
        page_type=payload.pageType,
        meta_title=payload.metaTitle,
        meta_description=payload.metaDescription,
    )
    return jsonable_encoder(documents_service.document_view(record))


@router.get("/{document_id}")
def get_document(document_id: str, store: RecordStore = Depends(get_store)):
    record = documents_service.get_document(store, document_id)
    return jsonable_encoder(documents_service.document_view(record))


@router.patch("/{document_id}")
def update_document(
    document_id: str,
    payload: DocumentUpdateRequest,
    store: RecordStore = Depends(get_store),
):
    record = documents_service.update_document(
        store,
        document_id,
        name=payload.name,
        slug=payload.slug,
        html_content=payload.htmlContent,
        status=payload.status,
        meta_title=payload.metaTitle,
        meta_description=payload.metaDescription,
    )
    return jsonable_encoder(documents_service.document_view(record))


@router.get("/{document_id}/analytics")
def document_analytics(document_id: str, store: RecordStore = Depends(get_store)) -> dict:
    documents_service.get_document(store, document_id)
    return tracking.page_analytics(store, document_id)


@router.post("/{document_id}/changes", response_model=ChangeResponse)
def apply_change(
    document_id: str,
    payload: ChangeRequest,
    store: RecordStore = Depends(get_store),
    engine: PatchEngine = Depends(get_patch_engine),
) -> ChangeResponse:
    result, record = documents_service.apply_change_request(store, engine, document_id, payload.instruction)
    return ChangeResponse(
        success=True,
        summary=result.description,
        changeCount=result.change_count,
        tier=result.tier,
        tokensUsed=result.tokens_used,
        document=_summary(documents_service.document_view(record)),
    )
