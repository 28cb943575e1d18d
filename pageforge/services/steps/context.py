from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from pageforge.config import settings
from pageforge.errors import CollaboratorError
from pageforge.llm.client import LLMClient, LLMGenerationParams, LLMResult
from pageforge.llm.images import ImageOutcome
from pageforge.schemas.steps import StepOutput
from pageforge.services.jobs import Job
from pageforge.storage.base import RecordStore


class ImageGenerator(Protocol):
    def generate(self, *, prompt: str, aspect_ratio: Optional[str] = None) -> ImageOutcome:
        ...


@dataclass
class StepResult:
    output: StepOutput
    result_document_id: Optional[str] = None


@dataclass
class StepContext:
    job: Job
    outputs: dict[str, StepOutput]
    llm: LLMClient
    images: ImageGenerator
    store: RecordStore
    deadline: Optional[float] = None
    tokens_used: int = field(default=0)

    @property
    def inputs(self) -> dict[str, Any]:
        return self.job.input_data

    def output(self, step: str) -> dict[str, Any]:
        """Prior step payload as a plain dict (empty when the step has no output)."""

        value = self.outputs.get(step)
        return value.model_dump(by_alias=False) if value is not None else {}

    def remaining_seconds(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def call_timeout(self, default: float) -> float:
        remaining = self.remaining_seconds()
        if remaining is None:
            return default
        if remaining <= 0:
            raise CollaboratorError("Pipeline time budget exhausted", service="pipeline", retryable=True)
        return min(default, remaining)

    def generate(
        self,
        system: str,
        prompt: str,
        *,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResult:
        params = LLMGenerationParams(
            model=model,
            max_tokens=max_tokens,
            system=system,
            timeout_seconds=self.call_timeout(timeout_seconds or settings.LLM_REQUEST_TIMEOUT_SECONDS),
        )
        result = self.llm.generate(prompt, params)
        self.tokens_used += result.tokens_used
        return result

    def search(self, system: str, prompt: str) -> LLMResult:
        params = LLMGenerationParams(
            system=system,
            timeout_seconds=self.call_timeout(settings.RESEARCH_TIMEOUT_SECONDS),
        )
        result = self.llm.search(prompt, params)
        self.tokens_used += result.tokens_used
        return result


def to_json(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)
