from __future__ import annotations

import html as html_lib
import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional

from pageforge.config import settings
from pageforge.errors import CollaboratorError, PatchError
from pageforge.llm.client import LLMClient, LLMGenerationParams
from pageforge.services.json_extract import extract_json_object, strip_code_fences

logger = logging.getLogger(__name__)

TIER_HEURISTIC = "heuristic"
TIER_AI_PATCH = "ai_patch"
TIER_FULL_REPLACEMENT = "full_replacement"

TRUNCATION_MARKER = "\n\n<!-- ... middle truncated for size ... -->\n\n"

_ROOT_MARKER_RE = re.compile(r"<!doctype\s+html|<html[\s>]", re.IGNORECASE)


@dataclass(frozen=True)
class HtmlDocument:
    """An immutable HTML buffer. Every edit returns a new value."""

    html: str

    def has_root_marker(self) -> bool:
        return bool(_ROOT_MARKER_RE.search(self.html))

    def with_html(self, html: str) -> "HtmlDocument":
        return HtmlDocument(html=html)

    def replace_all(self, old: str, new: str) -> tuple["HtmlDocument", int]:
        count = self.html.count(old) if old else 0
        if not count:
            return self, 0
        return self.with_html(self.html.replace(old, new)), count

    def replace_first(self, old: str, new: str) -> tuple["HtmlDocument", bool]:
        if not old or old not in self.html:
            return self, False
        return self.with_html(self.html.replace(old, new, 1)), True

    def context_window(self, max_chars: int) -> tuple[str, bool]:
        if len(self.html) <= max_chars:
            return self.html, False
        half = max_chars // 2
        return self.html[:half] + TRUNCATION_MARKER + self.html[-half:], True


@dataclass(frozen=True)
class ChangeResult:
    document: HtmlDocument
    description: str
    applied: bool
    tier: str
    change_count: int = 0
    tokens_used: int = 0
    # True when the instruction was already satisfied and nothing needed to change.
    no_op: bool = False


# ---------------------------------------------------------------------------
# Tier 1: deterministic heuristics
# ---------------------------------------------------------------------------

_URL = r"(https?://[^\s\"'<>]+|/[^\s\"'<>]*|#[^\s\"'<>]*|mailto:[^\s\"'<>]+|tel:[^\s\"'<>]+)"
_CTA_INSTRUCTION_RE = re.compile(
    r"\b(?:change|update|set|point|make|switch)\b.*?"
    r"\b(?:cta|ctas|call[\s-]to[\s-]actions?|buttons?)\b.*?"
    r"\b(?:to|at)\s+" + _URL,
    re.IGNORECASE,
)
_QUOTES = "\"'“”‘’"
_QUOTE_REPLACE_RE = re.compile(
    rf"\breplace\s+[{_QUOTES}](.+?)[{_QUOTES}]\s+with\s+[{_QUOTES}](.*?)[{_QUOTES}]",
    re.IGNORECASE | re.DOTALL,
)
_TITLE_INSTRUCTION_RE = re.compile(
    rf"\b(?:change|update|set|make)\s+(?:the\s+)?(?:page\s+)?title\s+(?:to|as)\s+[{_QUOTES}]?(.+?)[{_QUOTES}]?\s*\.?\s*$",
    re.IGNORECASE | re.DOTALL,
)
_HEADLINE_INSTRUCTION_RE = re.compile(
    rf"\b(?:change|update|set|make)\s+(?:the\s+)?(?:main\s+|hero\s+)?(?:headline|heading|h1)\s+(?:to|as)\s+"
    rf"[{_QUOTES}]?(.+?)[{_QUOTES}]?\s*\.?\s*$",
    re.IGNORECASE | re.DOTALL,
)
_ANCHOR_TAG_RE = re.compile(r"<a\b[^>]*>", re.IGNORECASE)
_HREF_RE = re.compile(r"""(?<![\w-])href\s*=\s*(["'])(.*?)\1""", re.IGNORECASE | re.DOTALL)
_CTA_MARKER_RE = re.compile(
    r"""(?<![\w-])class\s*=\s*(["'])[^"']*\b(?:btn|button|cta)[\w-]*[^"']*\1"""
    r"""|(?<![\w-])role\s*=\s*(["'])button\2"""
    r"""|\bdata-cta\b""",
    re.IGNORECASE,
)
_TITLE_TAG_RE = re.compile(r"(<title\b[^>]*>)(.*?)(</title>)", re.IGNORECASE | re.DOTALL)
_H1_TAG_RE = re.compile(r"(<h1\b[^>]*>)(.*?)(</h1>)", re.IGNORECASE | re.DOTALL)


def _clean_url(url: str) -> str:
    return url.rstrip(".,;:!?)")


def _match_cta_links(document: HtmlDocument, instruction: str) -> Optional[ChangeResult]:
    match = _CTA_INSTRUCTION_RE.search(instruction)
    if not match:
        return None
    url = _clean_url(match.group(1))
    escaped_url = html_lib.escape(url, quote=True)

    found = 0
    changed = 0

    def rewrite(tag_match: re.Match[str]) -> str:
        nonlocal found, changed
        tag = tag_match.group(0)
        if not _CTA_MARKER_RE.search(tag):
            return tag
        found += 1
        href = _HREF_RE.search(tag)
        if href is None:
            changed += 1
            return tag[:-1].rstrip("/").rstrip() + f' href="{escaped_url}">'
        if html_lib.unescape(href.group(2)) == url:
            return tag
        changed += 1
        return tag[: href.start()] + f'href="{escaped_url}"' + tag[href.end() :]

    new_html = _ANCHOR_TAG_RE.sub(rewrite, document.html)
    if found == 0:
        return None
    if changed == 0:
        return ChangeResult(
            document=document,
            description=f"All {found} CTA link(s) already point to {url}; nothing to change.",
            applied=False,
            tier=TIER_HEURISTIC,
            change_count=0,
            no_op=True,
        )
    return ChangeResult(
        document=document.with_html(new_html),
        description=f"Updated {changed} CTA link(s) to {url}.",
        applied=True,
        tier=TIER_HEURISTIC,
        change_count=changed,
    )


def _match_quoted_replace(document: HtmlDocument, instruction: str) -> Optional[ChangeResult]:
    match = _QUOTE_REPLACE_RE.search(instruction)
    if not match:
        return None
    old, new = match.group(1), match.group(2)
    if old == new:
        return None
    updated, count = document.replace_all(old, new)
    if not count:
        return None
    return ChangeResult(
        document=updated,
        description=f'Replaced {count} occurrence(s) of "{old}" with "{new}".',
        applied=True,
        tier=TIER_HEURISTIC,
        change_count=count,
    )


def _rewrite_first_tag(
    document: HtmlDocument, pattern: re.Pattern[str], text: str
) -> Optional[HtmlDocument]:
    tag = pattern.search(document.html)
    if tag is None:
        return None
    body = html_lib.escape(text, quote=False)
    if tag.group(2).strip() == body:
        return None
    new_html = document.html[: tag.start()] + tag.group(1) + body + tag.group(3) + document.html[tag.end() :]
    return document.with_html(new_html)


def _match_title(document: HtmlDocument, instruction: str) -> Optional[ChangeResult]:
    match = _TITLE_INSTRUCTION_RE.search(instruction.strip())
    if not match:
        return None
    title = match.group(1).strip()
    updated = _rewrite_first_tag(document, _TITLE_TAG_RE, title)
    if updated is None:
        return None
    return ChangeResult(
        document=updated,
        description=f'Changed the page title to "{title}".',
        applied=True,
        tier=TIER_HEURISTIC,
        change_count=1,
    )


def _match_headline(document: HtmlDocument, instruction: str) -> Optional[ChangeResult]:
    match = _HEADLINE_INSTRUCTION_RE.search(instruction.strip())
    if not match:
        return None
    headline = match.group(1).strip()
    updated = _rewrite_first_tag(document, _H1_TAG_RE, headline)
    if updated is None:
        return None
    return ChangeResult(
        document=updated,
        description=f'Changed the headline to "{headline}".',
        applied=True,
        tier=TIER_HEURISTIC,
        change_count=1,
    )


HEURISTICS: tuple[Callable[[HtmlDocument, str], Optional[ChangeResult]], ...] = (
    _match_cta_links,
    _match_quoted_replace,
    _match_title,
    _match_headline,
)


def apply_heuristics(document: HtmlDocument, instruction: str) -> Optional[ChangeResult]:
    for matcher in HEURISTICS:
        result = matcher(document, instruction)
        if result is not None:
            return result
    return None


# ---------------------------------------------------------------------------
# Tiers 2 and 3: AI patches, then full replacement
# ---------------------------------------------------------------------------

_PATCH_SYSTEM_PROMPT = """You are an expert web developer editing an HTML landing page.
Respond with a single JSON object and nothing else:
{"summary": "one sentence describing the change", "patches": [{"search": "...", "replace": "..."}]}

RULES:
1. Every "search" value must be copied exactly, character for character, from the document.
2. Keep each "search" short but unique in the document.
3. Never touch <script>, <meta> or <link> tags unless the request is about them.
4. Preserve the existing design language (colors, fonts, spacing).
5. If the page was truncated, only patch the parts you can see."""

_REWRITE_SYSTEM_PROMPT = """You are an expert web developer and conversion rate optimizer. You modify HTML landing pages based on user requests.

RULES:
1. Return ONLY the complete modified HTML document, starting with <!DOCTYPE html>. No explanations, no markdown code blocks.
2. Preserve ALL existing <script> tags, especially tracking/analytics scripts.
3. Preserve ALL <meta> tags and <link> tags.
4. Keep the page responsive and mobile-friendly.
5. Maintain the existing design language (colors, fonts, spacing)."""


def _patch_params(system: str) -> LLMGenerationParams:
    return LLMGenerationParams(
        model=settings.PATCH_MODEL or settings.LLM_DEFAULT_MODEL,
        max_tokens=settings.PATCH_MAX_OUTPUT_TOKENS,
        system=system,
        temperature=0.1,
    )


def _apply_patch_pairs(document: HtmlDocument, patches: list) -> tuple[HtmlDocument, int]:
    current = document
    applied = 0
    for index, patch in enumerate(patches):
        if not isinstance(patch, dict):
            logger.info("patch.skipped_malformed", extra={"index": index})
            continue
        search = patch.get("search")
        replace = patch.get("replace")
        if not isinstance(search, str) or not isinstance(replace, str) or not search:
            logger.info("patch.skipped_malformed", extra={"index": index})
            continue
        current, ok = current.replace_first(search, replace)
        if ok:
            applied += 1
        else:
            logger.info("patch.search_not_found", extra={"index": index, "search_preview": search[:80]})
    return current, applied


def _accept_full_document(text: str, truncated: bool) -> Optional[HtmlDocument]:
    candidate = HtmlDocument(strip_code_fences(text))
    if not candidate.has_root_marker():
        return None
    if truncated and TRUNCATION_MARKER.strip() in candidate.html:
        # A rewrite built from the truncated context would drop the middle of the page.
        return None
    return candidate


class PatchEngine:
    def __init__(self, llm: LLMClient, *, max_context_chars: Optional[int] = None) -> None:
        self.llm = llm
        self.max_context_chars = int(max_context_chars or settings.PATCH_MAX_CONTEXT_CHARS)

    def apply_change(self, document: HtmlDocument, instruction: str) -> ChangeResult:
        instruction = (instruction or "").strip()
        if not instruction:
            raise PatchError(TIER_HEURISTIC, "The change request is empty.")

        heuristic = apply_heuristics(document, instruction)
        if heuristic is not None:
            logger.info(
                "patch.heuristic_applied",
                extra={"change_count": heuristic.change_count, "no_op": heuristic.no_op},
            )
            return heuristic

        context, truncated = document.context_window(self.max_context_chars)
        prompt = (
            f"Here is the current HTML of the landing page:\n\n{context}\n\n"
            f"User request: {instruction}\n\n"
            "Return the JSON patch object."
        )
        try:
            response = self.llm.generate(prompt, _patch_params(_PATCH_SYSTEM_PROMPT))
        except CollaboratorError as exc:
            logger.warning("patch.ai_patch_failed", extra={"error": str(exc), "truncated": truncated})
            if truncated:
                raise PatchError(
                    TIER_AI_PATCH,
                    "The AI patch service failed and the page is too large for a full rewrite.",
                ) from exc
            return self._full_rewrite(document, instruction)

        tokens = response.tokens_used
        try:
            payload = extract_json_object(response.text)
        except ValueError:
            payload = None

        if isinstance(payload, dict) and isinstance(payload.get("patches"), list):
            patched, applied = _apply_patch_pairs(document, payload["patches"])
            summary = str(payload.get("summary") or "").strip()
            if applied and not patched.has_root_marker():
                raise PatchError(
                    TIER_AI_PATCH,
                    "The proposed patches would break the page structure, so none were applied.",
                    tokens_used=tokens,
                )
            return ChangeResult(
                document=patched if applied else document,
                description=summary or f"Applied {applied} of {len(payload['patches'])} patch(es).",
                applied=applied > 0,
                tier=TIER_AI_PATCH,
                change_count=applied,
                tokens_used=tokens,
            )

        replacement = _accept_full_document(response.text, truncated)
        if replacement is not None:
            return ChangeResult(
                document=replacement,
                description="Replaced the page with the AI-edited version.",
                applied=True,
                tier=TIER_FULL_REPLACEMENT,
                change_count=1,
                tokens_used=tokens,
            )
        raise PatchError(
            TIER_FULL_REPLACEMENT,
            "The AI response was neither a patch list nor a complete page.",
            tokens_used=tokens,
        )

    def _full_rewrite(self, document: HtmlDocument, instruction: str) -> ChangeResult:
        prompt = (
            f"Here is the current HTML of the landing page:\n\n{document.html}\n\n"
            f"User request: {instruction}\n\nReturn the complete modified HTML."
        )
        try:
            response = self.llm.generate(prompt, _patch_params(_REWRITE_SYSTEM_PROMPT))
        except CollaboratorError as exc:
            raise PatchError(TIER_FULL_REPLACEMENT, f"The AI service is unavailable: {exc}") from exc

        replacement = _accept_full_document(response.text, truncated=False)
        if replacement is None:
            raise PatchError(
                TIER_FULL_REPLACEMENT,
                "The AI rewrite did not return a complete HTML document.",
                tokens_used=response.tokens_used,
            )
        return ChangeResult(
            document=replacement,
            description="Rewrote the page with the requested change.",
            applied=True,
            tier=TIER_FULL_REPLACEMENT,
            change_count=1,
            tokens_used=response.tokens_used,
        )
