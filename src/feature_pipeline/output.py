"""Helpers for parsing JSON printed by content-generation CLIs."""

from __future__ import annotations

import json
import re
from typing import Any

from .errors import OutputParseError

_LEADING_FENCE_RE = re.compile(r"^```(?:json)?[ \t]*\n?", re.IGNORECASE)
_TRAILING_FENCE_RE = re.compile(r"\n?```\s*$")


def strip_code_fence(text: str) -> str:
    """Remove one optional markdown fence wrapping the whole response."""
    cleaned = (text or "").strip()
    if cleaned.startswith("```"):
        cleaned = _LEADING_FENCE_RE.sub("", cleaned, count=1)
        cleaned = _TRAILING_FENCE_RE.sub("", cleaned, count=1)
    return cleaned.strip()


def parse_json_response(text: str) -> Any:
    """Parse a bare or fence-wrapped JSON value from CLI output.

    Raises:
        OutputParseError: If the output is empty or not valid JSON.
    """
    candidate = strip_code_fence(text)
    if not candidate:
        raise OutputParseError("CLI returned empty output")
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise OutputParseError(f"CLI output JSON parse error: {exc}") from None


def parse_json_object(text: str) -> dict[str, Any]:
    obj = parse_json_response(text)
    if not isinstance(obj, dict):
        raise OutputParseError("CLI output JSON must be an object")
    return obj


def parse_json_array(text: str) -> list[Any]:
    obj = parse_json_response(text)
    if not isinstance(obj, list):
        raise OutputParseError("CLI output JSON must be an array")
    return obj
