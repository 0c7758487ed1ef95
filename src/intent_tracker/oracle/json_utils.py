"""Helpers for turning oracle text into JSON."""

import json
import re
from typing import Any

from .client import OracleResponseError

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)(\s*:)")


def clean_json_response(text: str) -> str:
    """Strip code fences, isolate the outer object, fix common syntax slips."""
    if not text:
        return ""
    cleaned = text.strip()
    fence = _FENCE_RE.search(cleaned)
    if fence:
        cleaned = fence.group(1).strip()
    match = _OBJECT_RE.search(cleaned)
    if match:
        cleaned = match.group(0)
    cleaned = _TRAILING_COMMA_RE.sub(r"\1", cleaned)
    cleaned = _BARE_KEY_RE.sub(r'\1"\2"\3', cleaned)
    return cleaned


def parse_json_response(text: str) -> Any:
    """Parse oracle output as JSON.

    Raises:
        OracleResponseError: If nothing parseable is found.
    """
    if isinstance(text, (dict, list)):
        return text
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        pass
    cleaned = clean_json_response(text or "")
    try:
        return json.loads(cleaned)
    except ValueError as e:
        raise OracleResponseError(f"Invalid JSON response: {e}") from e


def safe_json_loads(text: str, fallback: Any):
    """Parse JSON, returning fallback on failure."""
    try:
        return parse_json_response(text)
    except OracleResponseError:
        return fallback
