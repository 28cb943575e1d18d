from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class JobCreateRequest(BaseModel):
    pageType: str = Field(min_length=1)
    clientId: Optional[str] = None
    companyName: Optional[str] = None
    websiteUrl: Optional[str] = None
    offer: Optional[str] = None
    targetAudience: Optional[str] = None
    ctaUrl: Optional[str] = None
    notes: Optional[str] = None
    extra: dict[str, Any] = Field(default_factory=dict)


class JobCreateResponse(BaseModel):
    jobId: str
    status: str
    currentStep: str


class JobStatusResponse(BaseModel):
    jobId: str
    currentStep: str
    status: str
    progressPercent: int
    stepLabel: str
    tokensUsed: int
    cost: float
    error: Optional[str] = None
    failedStep: Optional[str] = None
    stepsCompleted: list[str]
    result: Optional[dict[str, Any]] = None
