from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class DocumentCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    htmlContent: str = Field(min_length=1)
    slug: Optional[str] = None
    clientId: Optional[str] = None
    pageType: Optional[str] = None
    metaTitle: Optional[str] = None
    metaDescription: Optional[str] = None


class DocumentUpdateRequest(BaseModel):
    name: Optional[str] = None
    slug: Optional[str] = None
    htmlContent: Optional[str] = None
    status: Optional[Literal["draft", "published"]] = None
    metaTitle: Optional[str] = None
    metaDescription: Optional[str] = None


class ChangeRequest(BaseModel):
    instruction: str = Field(min_length=1, max_length=4000)


class ChangeResponse(BaseModel):
    success: bool
    summary: str
    changeCount: int
    tier: str
    tokensUsed: int
    document: Optional[dict[str, Any]] = None


class PublicEventRequest(BaseModel):
    sessionId: Optional[str] = None
    eventType: Optional[str] = None
    referrer: Optional[str] = None
    deviceType: Optional[str] = None
    utm: dict[str, Any] = Field(default_factory=dict)
    formData: dict[str, Any] = Field(default_factory=dict)
    value: Optional[float] = None
