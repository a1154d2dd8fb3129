"""Per-request tool-calling loop against the completion API.

A run streams the conversation to the model, executes requested tools one
after another through the PlanetScale client, feeds the results back, and
repeats until the model answers without tool calls. Everything the caller
should see is emitted on the run's `EventChannel`.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import uuid
from typing import Any

import httpx

from .cancellation import CancelToken, RunAborted
from .completion import CompletionClient
from .events import ChunkEvent, EndEvent, ErrorEvent, EventChannel
from .json_helpers import to_bounded_json
from .logging_utils import bind_run_id, reset_run_id
from .pscale_client import PscaleClient
from .stream_chunks import (
    TOOL_CALLS_FINISH_REASON,
    ToolCallAccumulator,
    chunk_delta,
    chunk_finish_reason,
    is_tool_call_request,
)
from .tools import invoke_tool, openai_tools

LOG = logging.getLogger(__name__)


class RunState(str, enum.Enum):
    START = "start"
    AWAITING_MODEL = "awaiting_model"
    TOOL_EXECUTION = "tool_execution"
    END = "end"
    ABORTED = "aborted"
    FAILED = "failed"


_TERMINAL_STATES = {RunState.END, RunState.ABORTED, RunState.FAILED}


class ToolLoopLimitError(Exception):
    """Raised when the model keeps requesting tools past the configured limit."""


class CompletionProtocolError(Exception):
    """Raised when the completion stream contradicts itself."""


def describe_failure(exc: BaseException) -> tuple[str, str]:
    """Map a run failure to an error code and compact user-facing text."""
    if isinstance(exc, ToolLoopLimitError):
        return "tool_loop_limit", "Maximum tool loop iterations reached"
    if isinstance(exc, CompletionProtocolError):
        return "completion_protocol_error", str(exc)
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code if exc.response is not None else None
        return "upstream_http_error", f"Completion API request failed with HTTP {status}"
    if isinstance(exc, httpx.TimeoutException):
        return "upstream_timeout", "Upstream request timed out"
    if isinstance(exc, httpx.TransportError):
        return "upstream_unavailable", "Connection to upstream service failed"
    return "agent_error", "Unexpected agent failure"


class CompletionRun:
    """One end-to-end execution of the tool loop for a single request."""

    def __init__(
        self,
        *,
        model: str,
        max_tool_loops: int,
        completion: CompletionClient,
        pscale: PscaleClient,
        channel: EventChannel,
        messages: list[dict[str, Any]],
        token: CancelToken,
        run_id: str | None = None,
    ) -> None:
        self.model = model
        self.max_tool_loops = max(1, max_tool_loops)
        self.completion = completion
        self.pscale = pscale
        self.channel = channel
        self.token = token
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.state = RunState.START
        # Caller messages are never mutated; tool turns go to this copy only.
        self.conversation: list[dict[str, Any]] = [dict(msg) for msg in messages]

    @property
    def finished(self) -> bool:
        return self.state in _TERMINAL_STATES

    def abort(self, reason: str = "aborted") -> None:
        """Abort from any state; nothing is emitted afterwards."""
        self.token.cancel(reason)
        if self.finished:
            return
        LOG.debug("run aborted run=%s state=%s reason=%s", self.run_id, self.state.value, reason)
        self.state = RunState.ABORTED
        self.channel.abort()

    async def run(self) -> None:
        """Drive the loop to a terminal state. Only task cancellation propagates."""
        log_token = bind_run_id(self.run_id)
        try:
            await self._loop()
        except RunAborted:
            self.abort()
        except asyncio.CancelledError:
            self.abort("task cancelled")
            raise
        except Exception as exc:
            if self.token.cancelled:
                self.abort()
                return
            code, message = describe_failure(exc)
            LOG.warning("run failed run=%s code=%s error=%s", self.run_id, code, exc, exc_info=True)
            self.state = RunState.FAILED
            self.channel.emit(ErrorEvent(message=message, code=code))
            self.channel.close()
        else:
            LOG.debug("runner.end run=%s", self.run_id)
            self.state = RunState.END
            self.channel.emit(EndEvent())
            self.channel.close()
        finally:
            reset_run_id(log_token)

    async def _loop(self) -> None:
        tools = openai_tools()
        tool_rounds = 0
        round_number = 0
        while True:
            round_number += 1
            self.token.raise_if_cancelled()
            self.state = RunState.AWAITING_MODEL
            tool_calls, content = await self._stream_round(tools, round_number)
            if not tool_calls:
                return

            # A round over the limit runs none of its tools.
            if tool_rounds >= self.max_tool_loops:
                raise ToolLoopLimitError(f"model requested tools in more than {self.max_tool_loops} rounds")
            tool_rounds += 1

            self.state = RunState.TOOL_EXECUTION
            self.conversation.append({"role": "assistant", "content": content, "tool_calls": tool_calls})
            for tool_call in tool_calls:
                self.token.raise_if_cancelled()
                self.conversation.append(await self._execute_tool_call(tool_call))

    async def _stream_round(
        self,
        tools: list[dict[str, Any]],
        round_number: int,
    ) -> tuple[list[dict[str, Any]], str | None]:
        """Stream one model turn, forwarding content and collecting tool calls."""
        payload = {
            "model": self.model,
            "messages": self.conversation,
            "tools": tools,
            "stream": True,
        }
        accumulator = ToolCallAccumulator()
        content_parts: list[str] = []
        finish_reason: str | None = None

        async for chunk in self.completion.stream_chat_completion(
            payload,
            trace_id=f"{self.run_id}:round{round_number}",
        ):
            self.token.raise_if_cancelled()
            if LOG.isEnabledFor(logging.DEBUG):
                LOG.debug("runner.chunk run=%s chunk=%s", self.run_id, to_bounded_json(chunk))

            finish_reason = chunk_finish_reason(chunk) or finish_reason
            delta = chunk_delta(chunk)
            accumulator.feed(delta)
            if isinstance(delta.get("content"), str):
                content_parts.append(delta["content"])

            if is_tool_call_request(chunk):
                continue
            self.channel.emit(ChunkEvent(chunk))

        tool_calls = accumulator.tool_calls()
        if finish_reason == TOOL_CALLS_FINISH_REASON and not tool_calls:
            raise CompletionProtocolError("Model requested tool calls but sent no tool call payloads")
        return tool_calls, "".join(content_parts) or None

    async def _execute_tool_call(self, tool_call: dict[str, Any]) -> dict[str, Any]:
        """Run one requested tool and format its `role=tool` message."""
        function = tool_call.get("function") or {}
        name = str(function.get("name") or "")
        raw_arguments = function.get("arguments")
        LOG.info("runner.functionCall run=%s name=%s arguments=%s", self.run_id, name, raw_arguments)

        result = await invoke_tool(name, raw_arguments, self.pscale)
        return {
            "role": "tool",
            "tool_call_id": tool_call["id"],
            "name": name,
            "content": json.dumps(result, ensure_ascii=False, separators=(",", ":")),
        }
