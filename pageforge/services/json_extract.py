from __future__ import annotations

import ast
import json
import re
from typing import Any, cast

_FENCE_RE = re.compile(r"```(?:json|html)?\s*\n?(.*?)```", re.DOTALL | re.IGNORECASE)
_OPEN_BRACE_RE = re.compile(r"\{")


def strip_code_fences(text: str) -> str:
    stripped = text.strip()
    match = _FENCE_RE.search(stripped)
    if match and stripped.startswith("```"):
        return match.group(1).strip()
    return stripped


def extract_json_object(text: str) -> dict[str, Any]:
    """
    Parse the first JSON object in a model response.

    Tries the whole text, then a fenced block, then decodes from each `{` in
    turn, each with trailing-comma and control-character repair. Raises ValueError.
    """

    text = (text or "").strip()
    if not text:
        raise ValueError("Model returned empty response")

    candidates = [text]
    fenced = _FENCE_RE.search(text)
    if fenced:
        candidates.append(fenced.group(1).strip())
    for candidate in candidates:
        parsed = _try_parse(candidate)
        if parsed is not None:
            return parsed

    decoder = json.JSONDecoder()
    for source in (text, _repair_json_text(text)):
        for brace in _OPEN_BRACE_RE.finditer(source):
            try:
                parsed, _ = decoder.raw_decode(source, brace.start())
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                return cast(dict[str, Any], parsed)

    raise ValueError("Model did not return a JSON object")


def parse_json_or_raw(text: str) -> dict[str, Any]:
    try:
        return extract_json_object(text)
    except ValueError:
        return {"raw": text}


def _try_parse(candidate: str) -> dict[str, Any] | None:
    for attempt in (candidate, _repair_json_text(candidate)):
        if not attempt:
            continue
        try:
            parsed = json.loads(attempt)
        except json.JSONDecodeError:
            parsed = None
        if parsed is None:
            try:
                parsed = ast.literal_eval(attempt)
            except (ValueError, SyntaxError, MemoryError, RecursionError):
                parsed = None
        if isinstance(parsed, dict):
            return cast(dict[str, Any], parsed)
    return None


_CONTROL_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t", "\b": "\\b", "\f": "\\f"}


def _repair_json_text(text: str) -> str:
    """Drop commas before `}`/`]` and escape raw control characters inside strings, in one pass."""

    out: list[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            elif ch < " ":
                out.append(_CONTROL_ESCAPES.get(ch, f"\\u{ord(ch):04x}"))
                continue
            out.append(ch)
            continue

        if ch in "}]":
            end = len(out)
            while end and out[end - 1].isspace():
                end -= 1
            if end and out[end - 1] == ",":
                del out[end - 1]
        elif ch == '"':
            in_string = True
        out.append(ch)
    return "".join(out)
