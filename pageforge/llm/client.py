from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from typing import Any, Optional

import anthropic
import google.generativeai as genai
import openai
from anthropic import Anthropic
from openai import OpenAI

from pageforge.config import settings
from pageforge.errors import CollaboratorError

logger = logging.getLogger(__name__)


class LLMClientConfigError(CollaboratorError):
    pass


@dataclass
class LLMGenerationParams:
    model: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: float = 0.2
    system: Optional[str] = None
    use_web_search: bool = False
    timeout_seconds: Optional[float] = None


@dataclass
class LLMResult:
    text: str
    tokens_used: int = 0
    model: Optional[str] = None
    citations: list[dict[str, str]] = field(default_factory=list)


class LLMClient:
    """
    Routes a completion to Anthropic, OpenAI or Gemini by model prefix.

    Every call returns the generated text plus token usage and carries a hard
    timeout. Missing keys, provider errors and empty responses all raise
    CollaboratorError; nothing is fabricated locally.
    """

    def __init__(self, default_model: Optional[str] = None) -> None:
        self.default_model = default_model or settings.LLM_DEFAULT_MODEL
        self._gemini_configured = False
        self._anthropic_client: Optional[Anthropic] = None
        self._openai_client: Optional[OpenAI] = None

    def generate(self, prompt: str, params: Optional[LLMGenerationParams] = None) -> LLMResult:
        params = params or LLMGenerationParams()
        model = params.model or self.default_model
        if params.use_web_search and not self._is_openai_model(model):
            raise LLMClientConfigError(
                f"Web search is only available for OpenAI models (got {model})", service="llm"
            )
        logger.info("llm.generate", extra={"model": model, "web_search": params.use_web_search})
        if self._is_openai_model(model):
            result = self._generate_with_openai(prompt, model, params)
        elif model.startswith("claude"):
            result = self._generate_with_anthropic(prompt, model, params)
        else:
            result = self._generate_with_gemini(prompt, model, params)
        if not result.text.strip():
            raise CollaboratorError(f"Model {model} returned an empty response", service="llm")
        return result

    def search(self, prompt: str, params: Optional[LLMGenerationParams] = None) -> LLMResult:
        """Web-search-augmented completion; returned citations are url/title pairs."""

        params = params or LLMGenerationParams()
        params = replace(
            params,
            model=params.model or settings.LLM_RESEARCH_MODEL,
            use_web_search=True,
            timeout_seconds=params.timeout_seconds or settings.RESEARCH_TIMEOUT_SECONDS,
        )
        return self.generate(prompt, params)

    def _is_openai_model(self, model: str) -> bool:
        lower = model.lower()
        prefixes = ("gpt-", "chatgpt-", "o1", "o3", "o4", "omni-")
        return any(lower.startswith(prefix) for prefix in prefixes)

    def _timeout(self, params: LLMGenerationParams) -> float:
        return float(params.timeout_seconds or settings.LLM_REQUEST_TIMEOUT_SECONDS)

    def _max_tokens(self, params: LLMGenerationParams) -> int:
        return int(params.max_tokens or settings.LLM_MAX_OUTPUT_TOKENS)

    def _generate_with_openai(self, prompt: str, model: str, params: LLMGenerationParams) -> LLMResult:
        api_key = settings.OPENAI_API_KEY or os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise LLMClientConfigError("OPENAI_API_KEY not configured", service="llm")

        if not self._openai_client:
            client_kwargs: dict[str, Any] = {"api_key": api_key}
            base_url = os.getenv("OPENAI_BASE_URL")
            if base_url:
                client_kwargs["base_url"] = base_url
            self._openai_client = OpenAI(**client_kwargs)

        request_kwargs: dict[str, Any] = {
            "model": model,
            "input": prompt,
            "max_output_tokens": self._max_tokens(params),
            "timeout": self._timeout(params),
        }
        if params.system:
            request_kwargs["instructions"] = params.system
        if params.use_web_search:
            request_kwargs["tools"] = [{"type": "web_search"}]
        else:
            request_kwargs["temperature"] = params.temperature

        try:
            response = self._openai_client.responses.create(**request_kwargs)
        except openai.APITimeoutError as exc:
            raise CollaboratorError(f"OpenAI request timed out: {exc}", service="llm", retryable=True) from exc
        except openai.APIStatusError as exc:
            raise CollaboratorError(str(exc), service="llm", status_code=exc.status_code) from exc
        except openai.OpenAIError as exc:
            raise CollaboratorError(str(exc), service="llm") from exc

        text = getattr(response, "output_text", None) or ""
        citations: list[dict[str, str]] = []
        for item in getattr(response, "output", None) or []:
            for chunk in getattr(item, "content", None) or []:
                if not text and getattr(chunk, "text", None):
                    text += chunk.text
                for annotation in getattr(chunk, "annotations", None) or []:
                    url = getattr(annotation, "url", None)
                    if url and all(c["url"] != url for c in citations):
                        citations.append({"url": url, "title": getattr(annotation, "title", None) or url})

        usage = getattr(response, "usage", None)
        tokens = 0
        if usage is not None:
            tokens = int(getattr(usage, "input_tokens", 0) or 0) + int(getattr(usage, "output_tokens", 0) or 0)
        return LLMResult(text=text, tokens_used=tokens, model=model, citations=citations)

    def _generate_with_gemini(self, prompt: str, model: str, params: LLMGenerationParams) -> LLMResult:
        api_key = settings.GEMINI_API_KEY or os.getenv("GEMINI_API_KEY")
        if not api_key:
            raise LLMClientConfigError("GEMINI_API_KEY not configured", service="llm")

        if not self._gemini_configured:
            genai.configure(api_key=api_key)
            self._gemini_configured = True

        generation_config = {
            "temperature": params.temperature,
            "max_output_tokens": self._max_tokens(params),
        }
        model_name = model if model.startswith("models/") else f"models/{model}"
        model_client = genai.GenerativeModel(
            model_name=model_name,
            generation_config=generation_config,
            system_instruction=params.system,
        )
        try:
            result = model_client.generate_content(prompt, request_options={"timeout": self._timeout(params)})
        except Exception as exc:
            raise CollaboratorError(f"Gemini request failed: {exc}", service="llm") from exc

        text = ""
        if result and getattr(result, "candidates", None):
            first = result.candidates[0]
            if first and first.content and getattr(first.content, "parts", None):
                text = "".join(getattr(part, "text", "") or "" for part in first.content.parts)
        usage = getattr(result, "usage_metadata", None)
        tokens = int(getattr(usage, "total_token_count", 0) or 0) if usage is not None else 0
        return LLMResult(text=text, tokens_used=tokens, model=model)

    def _generate_with_anthropic(self, prompt: str, model: str, params: LLMGenerationParams) -> LLMResult:
        api_key = settings.ANTHROPIC_API_KEY or os.getenv("ANTHROPIC_API_KEY")
        if not api_key:
            raise LLMClientConfigError("ANTHROPIC_API_KEY not configured", service="llm")

        if not self._anthropic_client:
            self._anthropic_client = Anthropic(api_key=api_key)

        request_kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": self._max_tokens(params),
            "temperature": params.temperature,
            "messages": [{"role": "user", "content": prompt}],
            "timeout": self._timeout(params),
        }
        if params.system:
            request_kwargs["system"] = params.system
        try:
            response = self._anthropic_client.messages.create(**request_kwargs)
        except anthropic.APITimeoutError as exc:
            raise CollaboratorError(f"Anthropic request timed out: {exc}", service="llm", retryable=True) from exc
        except anthropic.APIStatusError as exc:
            raise CollaboratorError(str(exc), service="llm", status_code=exc.status_code) from exc
        except anthropic.AnthropicError as exc:
            raise CollaboratorError(str(exc), service="llm") from exc

        text_parts = [content.text for content in response.content if getattr(content, "text", None)]
        usage = getattr(response, "usage", None)
        tokens = 0
        if usage is not None:
            tokens = int(getattr(usage, "input_tokens", 0) or 0) + int(getattr(usage, "output_tokens", 0) or 0)
        return LLMResult(text="".join(text_parts), tokens_used=tokens, model=model)
