from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class PageforgeError(RuntimeError):
    pass


@dataclass
class CollaboratorError(PageforgeError):
    """An external service (LLM, image, search, file store) failed or timed out."""

    message: str
    service: str = "external"
    status_code: Optional[int] = None
    retryable: bool = False

    def __str__(self) -> str:
        status = f" status={self.status_code}" if self.status_code is not None else ""
        return f"{self.service}: {self.message}{status}"


class StoreConfigError(PageforgeError):
    pass


@dataclass
class PreconditionFailed(PageforgeError):
    collection: str
    record_id: str
    expected: Optional[str] = None
    actual: Optional[str] = None

    def __str__(self) -> str:
        return (
            f"Write to {self.collection}/{self.record_id} rejected: record changed since it was read "
            f"(expected version {self.expected}, found {self.actual}). Re-read and retry."
        )


@dataclass
class DuplicateKeyError(PageforgeError):
    collection: str
    field: str
    value: str

    def __str__(self) -> str:
        return f"{self.collection}.{self.field} '{self.value}' already exists"


class ValidationFailed(PageforgeError, ValueError):
    pass


@dataclass
class NotFoundError(PageforgeError):
    kind: str
    identifier: str

    def __str__(self) -> str:
        return f"{self.kind} not found: {self.identifier}"


class JobStateError(PageforgeError):
    pass


@dataclass
class StepFailedError(PageforgeError):
    job_id: str
    step: str
    message: str

    def __str__(self) -> str:
        return f"Step '{self.step}' failed for job {self.job_id}: {self.message}"


@dataclass
class PatchError(PageforgeError):
    tier: str
    reason: str
    tokens_used: int = 0

    def __str__(self) -> str:
        return f"{self.reason} (last tier attempted: {self.tier}). Try rephrasing the instruction."
