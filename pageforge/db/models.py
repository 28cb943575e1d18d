from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Float, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from pageforge.db.base import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class GenerationJob(Base):
    __tablename__ = "generation_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    client_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    page_type: Mapped[str] = mapped_column(Text, nullable=False)
    current_step: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    input_data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    step_outputs: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failed_step: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    result_document_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    extra: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (UniqueConstraint("slug", name="uq_documents_slug"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    slug: Mapped[str] = mapped_column(String(200), nullable=False)
    html_content: Mapped[str] = mapped_column(Text, nullable=False)
    client_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    page_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft")
    views: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    leads: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    meta_title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    meta_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    generation_job_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    factcheck_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    extra: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class PageEventLog(Base):
    __tablename__ = "page_events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    views: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    leads: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    conversions: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    extra: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


COLLECTION_MODELS: dict[str, type[Base]] = {
    "jobs": GenerationJob,
    "documents": Document,
    "page_events": PageEventLog,
}
