from __future__ import annotations

import base64
import io
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

import httpx
from PIL import Image, UnidentifiedImageError

from pageforge.config import settings
from pageforge.errors import CollaboratorError

logger = logging.getLogger(__name__)

_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"


@dataclass(frozen=True)
class GeneratedImage:
    data: bytes
    mime_type: str
    width: Optional[int] = None
    height: Optional[int] = None

    def data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{base64.b64encode(self.data).decode('ascii')}"


@dataclass(frozen=True)
class ImageRefusal:
    reason: str


ImageOutcome = Union[GeneratedImage, ImageRefusal]


def _extract_first_inline_image(response_json: dict[str, Any]) -> Optional[tuple[bytes, str]]:
    candidates = response_json.get("candidates") or []
    for cand in candidates:
        content = cand.get("content") if isinstance(cand, dict) else None
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            continue
        for part in parts:
            if not isinstance(part, dict):
                continue
            inline = part.get("inlineData") or part.get("inline_data")
            if not isinstance(inline, dict):
                continue
            data = inline.get("data")
            mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
            if isinstance(data, str) and data:
                return base64.b64decode(data), str(mime_type)
    return None


def _refusal_reason(response_json: dict[str, Any]) -> str:
    feedback = response_json.get("promptFeedback") or {}
    if isinstance(feedback, dict) and feedback.get("blockReason"):
        return f"prompt blocked: {feedback['blockReason']}"
    for cand in response_json.get("candidates") or []:
        if isinstance(cand, dict) and cand.get("finishReason") not in (None, "STOP"):
            return f"generation stopped: {cand['finishReason']}"
    return "response did not include inline image data"


def _image_size(data: bytes) -> tuple[Optional[int], Optional[int]]:
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.size
    except (UnidentifiedImageError, OSError):
        return None, None


class GeminiImageGenerator:
    """Text-to-image over the Gemini generateContent REST endpoint."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.api_key = api_key or settings.GEMINI_API_KEY
        self.model = model or settings.IMAGE_MODEL
        self.timeout_seconds = float(timeout_seconds or settings.IMAGE_TIMEOUT_SECONDS)
        self._transport = transport

    def generate(self, *, prompt: str, aspect_ratio: Optional[str] = None) -> ImageOutcome:
        if not self.api_key:
            raise CollaboratorError("GEMINI_API_KEY not configured", service="image")

        payload: dict[str, Any] = {"contents": [{"parts": [{"text": prompt}]}]}
        if aspect_ratio:
            payload["generationConfig"] = {"imageConfig": {"aspectRatio": aspect_ratio}}

        url = f"{_GEMINI_BASE_URL}/{self.model}:generateContent"
        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self._transport) as client:
                resp = client.post(
                    url,
                    headers={"x-goog-api-key": self.api_key, "Content-Type": "application/json"},
                    json=payload,
                )
        except httpx.TimeoutException as exc:
            raise CollaboratorError(f"Image request timed out: {exc}", service="image", retryable=True) from exc
        except httpx.HTTPError as exc:
            raise CollaboratorError(f"Image request failed: {exc}", service="image") from exc

        if resp.status_code >= 400:
            raise CollaboratorError(
                f"Image request failed: {resp.text[:300]}", service="image", status_code=resp.status_code
            )
        data = resp.json()
        extracted = _extract_first_inline_image(data)
        if extracted is None:
            reason = _refusal_reason(data)
            logger.warning("image.refused", extra={"reason": reason, "model": self.model})
            return ImageRefusal(reason=reason)
        image_bytes, mime_type = extracted
        width, height = _image_size(image_bytes)
        return GeneratedImage(data=image_bytes, mime_type=mime_type, width=width, height=height)
