"""
Tolerant parsing of structured JSON out of free-form model text.
"""

import json
import re
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

_FENCE_OPEN = re.compile(r"^\s*```(?:json|JSON)?\s*")
_FENCE_CLOSE = re.compile(r"\s*```\s*$")
_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")
_ARRAY_PATTERN = re.compile(r"\[[\s\S]*\]")


def strip_code_fences(text: str) -> str:
    """Remove a leading ```json fence and a trailing ``` fence."""
    cleaned = _FENCE_OPEN.sub("", text.strip())
    return _FENCE_CLOSE.sub("", cleaned).strip()


def parse_json_payload(text: str) -> Any:
    """
    Parse a JSON document out of model text.

    Tries the fence-stripped text first, then the outermost {...} or [...]
    span. Returns {} when nothing parses.
    """
    if not text:
        return {}
    cleaned = strip_code_fences(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    for pattern in (_OBJECT_PATTERN, _ARRAY_PATTERN):
        match = pattern.search(cleaned)
        if not match:
            continue
        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError:
            continue

    logger.warning("model_output_unparseable", preview=cleaned[:200])
    return {}


def extract_records(payload: Any, key: str = "items") -> list[dict]:
    """Pull the list of records under `key` (or a bare top-level list)."""
    if isinstance(payload, dict):
        payload = payload.get(key)
    if not isinstance(payload, list):
        return []
    return [row for row in payload if isinstance(row, dict)]


def parse_items(text: str, key: str = "items") -> list[dict]:
    return extract_records(parse_json_payload(text), key)
