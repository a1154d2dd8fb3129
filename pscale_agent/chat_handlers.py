"""SSE framing of run events and the caller-disconnect bridge."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from typing import Any, AsyncGenerator, Awaitable, Callable

from fastapi import Request
from fastapi.responses import StreamingResponse

from .events import ChunkEvent, EndEvent, ErrorEvent, EventChannel, ReferenceEvent, UpdateEvent
from .orchestrator import CompletionRun
from .stream_chunks import TOOL_CALLS_FINISH_REASON, chunk_finish_reason, update_chunk

LOG = logging.getLogger(__name__)

REFERENCES_EVENT = "copilot_references"
ERRORS_EVENT = "copilot_errors"
_COMPACT = (",", ":")


def sse_data(payload: Any) -> bytes:
    """Encode one SSE `data:` event."""
    return f"data: {json.dumps(payload, ensure_ascii=False, separators=_COMPACT)}\n\n".encode("utf-8")


def sse_event(name: str, payload: Any) -> bytes:
    """Encode one named SSE event."""
    return f"event: {name}\ndata: {json.dumps(payload, ensure_ascii=False, separators=_COMPACT)}\n\n".encode("utf-8")


def build_sse_response(stream: AsyncGenerator[bytes, None]) -> StreamingResponse:
    """Build standard SSE response with consistent proxy-safe headers."""
    return StreamingResponse(
        stream,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


async def translate(channel: EventChannel, *, model: str) -> AsyncGenerator[bytes, None]:
    """Frame run events in arrival order; returns on End or error."""
    async for event in channel:
        if isinstance(event, ChunkEvent):
            # Clients misread the empty tool_calls finish chunk.
            if chunk_finish_reason(event.chunk) == TOOL_CALLS_FINISH_REASON:
                continue
            yield sse_data(event.chunk)
        elif isinstance(event, UpdateEvent):
            LOG.debug("ps.update %r", event.text)
            yield sse_data(update_chunk(model=model, text=event.text))
        elif isinstance(event, ReferenceEvent):
            yield sse_event(REFERENCES_EVENT, event.references)
        elif isinstance(event, ErrorEvent):
            yield sse_event(
                ERRORS_EVENT,
                [
                    {
                        "type": "agent",
                        "code": event.code,
                        "message": event.message,
                        "identifier": event.code,
                    }
                ],
            )
            return
        elif isinstance(event, EndEvent):
            return


async def run_stream(
    run: CompletionRun,
    *,
    on_finish: Callable[[], Awaitable[None]] | None = None,
) -> AsyncGenerator[bytes, None]:
    """Run the loop as a task and yield its frames.

    Closing or cancelling this generator before the run ends aborts the run.
    """
    task = asyncio.create_task(run.run(), name=f"run-{run.run_id}")
    frames = translate(run.channel, model=run.model)
    try:
        async for frame in frames:
            yield frame
    finally:
        cleanup_cancelled = False
        await frames.aclose()
        if not task.done() and not run.finished:
            LOG.debug("stream.cancel run=%s", run.run_id)
            run.abort("stream cancelled")
            task.cancel()
        try:
            await asyncio.shield(asyncio.wait({task}))
        except asyncio.CancelledError:
            cleanup_cancelled = True
        if task.done() and not task.cancelled() and task.exception() is not None:
            LOG.error("run task crashed run=%s", run.run_id, exc_info=task.exception())
        if on_finish is not None:
            try:
                await asyncio.shield(on_finish())
            except asyncio.CancelledError:
                cleanup_cancelled = True
        if cleanup_cancelled:
            raise asyncio.CancelledError


async def stream_until_disconnect(
    source: AsyncGenerator[bytes, None],
    *,
    request: Request | None,
    poll_seconds: float,
) -> AsyncGenerator[bytes, None]:
    """Forward stream frames and close the source once the client goes away."""
    started = time.monotonic()
    poll_seconds = poll_seconds if poll_seconds > 0 else 0.5
    iterator = source.__aiter__()
    try:
        while True:
            next_item = asyncio.create_task(iterator.__anext__())
            try:
                while not next_item.done():
                    if request is not None and await request.is_disconnected():
                        LOG.debug(
                            "client disconnected, stopping stream elapsed=%.3fs",
                            time.monotonic() - started,
                        )
                        next_item.cancel()
                        with contextlib.suppress(asyncio.CancelledError):
                            await next_item
                        return
                    await asyncio.wait({next_item}, timeout=poll_seconds)
                yield next_item.result()
            except StopAsyncIteration:
                return
            except BaseException:
                if not next_item.done():
                    next_item.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await next_item
                raise
    finally:
        cleanup_cancelled = False
        try:
            await asyncio.shield(source.aclose())
        except asyncio.CancelledError:
            cleanup_cancelled = True
        LOG.debug("stream wrapper closed elapsed=%.3fs", time.monotonic() - started)
        if cleanup_cancelled:
            raise asyncio.CancelledError
