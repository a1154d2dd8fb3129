"""JSON helpers shared by logging and tool-result serialization."""

from __future__ import annotations

import json
from typing import Any


def to_bounded_json(payload: Any, max_len: int = 8000) -> str:
    """Serialize arbitrary values into bounded JSON-like text for logging."""
    try:
        raw = json.dumps(payload, ensure_ascii=False, default=str)
    except Exception:
        raw = repr(payload)
    if len(raw) > max_len:
        return raw[:max_len] + "...<truncated>"
    return raw


def decode_json_body(text: str) -> Any:
    """Decode a response body as JSON, falling back to the raw text."""
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text
