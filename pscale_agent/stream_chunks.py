"""Helpers for OpenAI-compatible streaming chunks."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any

TOOL_CALLS_FINISH_REASON = "tool_calls"
UPDATE_CHUNK_ID = "chunk"


def client_chunk(
    *,
    completion_id: str,
    model: str,
    created: int,
    delta: dict[str, Any],
    finish_reason: str | None = None,
) -> dict[str, Any]:
    """Build a canonical `chat.completion.chunk` payload for clients."""
    return {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }


def update_chunk(*, model: str, text: str, created: int | None = None) -> dict[str, Any]:
    """Wrap progress narration as a content delta."""
    return client_chunk(
        completion_id=UPDATE_CHUNK_ID,
        model=model,
        created=int(time.time()) if created is None else created,
        delta={"content": text},
        finish_reason=None,
    )


def pick_primary_choice(chunk: dict[str, Any]) -> dict[str, Any] | None:
    """Return the primary choice (index 0 if present) from a chunk."""
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices:
        return None

    for choice in choices:
        if isinstance(choice, dict) and choice.get("index") == 0:
            return choice

    first = choices[0]
    return first if isinstance(first, dict) else None


def chunk_finish_reason(chunk: dict[str, Any]) -> str | None:
    choice = pick_primary_choice(chunk) or {}
    reason = choice.get("finish_reason")
    return reason if isinstance(reason, str) else None


def chunk_delta(chunk: dict[str, Any]) -> dict[str, Any]:
    choice = pick_primary_choice(chunk) or {}
    delta = choice.get("delta")
    return delta if isinstance(delta, dict) else {}


def is_tool_call_request(chunk: dict[str, Any]) -> bool:
    """True for chunks that only drive the tool loop and must not reach the caller."""
    if chunk_finish_reason(chunk) == TOOL_CALLS_FINISH_REASON:
        return True
    return bool(chunk_delta(chunk).get("tool_calls"))


@dataclass
class _PendingCall:
    call_id: str | None = None
    name: str = ""
    argument_parts: list[str] = field(default_factory=list)


class ToolCallAccumulator:
    """Reassemble streamed `tool_calls` deltas into whole OpenAI tool calls.

    Deltas are keyed by their `index`; ids and names arrive once, arguments
    arrive as string fragments that are concatenated in arrival order.
    """

    def __init__(self) -> None:
        self._pending: dict[int, _PendingCall] = {}

    def feed(self, delta: dict[str, Any]) -> None:
        """Merge the `tool_calls` list of one chunk delta, if it has one."""
        fragments = delta.get("tool_calls")
        if not isinstance(fragments, list):
            return
        for fragment in fragments:
            if not isinstance(fragment, dict) or not isinstance(fragment.get("index"), int):
                continue
            pending = self._pending.setdefault(fragment["index"], _PendingCall())
            if fragment.get("id"):
                pending.call_id = str(fragment["id"])
            function = fragment.get("function")
            if not isinstance(function, dict):
                continue
            if function.get("name"):
                pending.name = str(function["name"])
            if isinstance(function.get("arguments"), str):
                pending.argument_parts.append(function["arguments"])

    def tool_calls(self) -> list[dict[str, Any]]:
        """Completed calls in index order; nameless entries are dropped."""
        calls: list[dict[str, Any]] = []
        for index in sorted(self._pending):
            pending = self._pending[index]
            name = pending.name.strip()
            if not name:
                continue
            calls.append(
                {
                    "id": pending.call_id or f"call_{uuid.uuid4().hex}",
                    "type": "function",
                    "function": {"name": name, "arguments": "".join(pending.argument_parts) or "{}"},
                }
            )
        return calls
