"""Client for the streaming OpenAI-compatible chat completions API."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from typing import Any, AsyncGenerator

import httpx

from .config import AgentConfig
from .json_helpers import to_bounded_json

LOG = logging.getLogger(__name__)

_COMPLETIONS_PATH = "/v1/chat/completions"

STREAM_DONE = object()


def decode_sse_line(line: str) -> Any:
    """Decode one line of a completion stream.

    Returns the chunk dict, `STREAM_DONE` for the `[DONE]` marker, or None for
    anything else (blank lines, comments, unparseable data).
    """
    if not line.startswith("data:"):
        return None
    data = line[5:].strip()
    if data == "[DONE]":
        return STREAM_DONE
    try:
        chunk = json.loads(data)
    except json.JSONDecodeError:
        return None
    return chunk if isinstance(chunk, dict) else None


class CompletionClient:
    """Thin async HTTP client for the completion endpoint.

    Holds only immutable settings; every stream opens its own connection so
    concurrent runs share no mutable state.
    """

    def __init__(self, cfg: AgentConfig) -> None:
        self._base_url = cfg.openai_base_url.rstrip("/")
        self._api_key = cfg.openai_api_key
        self._retries = cfg.completion_connect_retries
        self._retry_delay = max(0, cfg.completion_retry_interval_ms) / 1000.0
        self._timeout = httpx.Timeout(connect=10.0, read=300.0, write=120.0, pool=10.0)

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }

    def _build_client(self) -> httpx.AsyncClient:
        """Create a fresh HTTP client for one stream."""
        return httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)

    @staticmethod
    def is_retryable_connect_error(exc: Exception) -> bool:
        """Decide whether one completion error should trigger a retry."""
        if isinstance(exc, httpx.TransportError):
            return True
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code if exc.response is not None else None
            if status is None:
                return False
            return status == 429 or status >= 500
        return False

    def _may_retry(self, attempt: int) -> bool:
        # Negative means retry forever.
        return self._retries < 0 or attempt <= self._retries

    async def stream_chat_completion(
        self,
        payload: dict[str, Any],
        *,
        trace_id: str | None = None,
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Run one streaming chat completion and yield decoded chunk objects.

        Connect failures are retried only while nothing has been yielded yet.
        """
        req_payload = {**payload, "stream": True}
        tag = trace_id or "-"
        started = time.monotonic()
        LOG.debug("completion stream start trace=%s payload=%s", tag, to_bounded_json(req_payload))

        attempt = 1
        delivered = 0
        while True:
            try:
                async with contextlib.aclosing(self._stream_once(req_payload, tag)) as chunks:
                    async for chunk in chunks:
                        delivered += 1
                        yield chunk
                return
            except asyncio.CancelledError:
                LOG.debug("completion stream cancelled trace=%s chunks=%s", tag, delivered)
                raise
            except Exception as exc:
                if delivered or not self.is_retryable_connect_error(exc) or not self._may_retry(attempt):
                    raise
                LOG.warning(
                    "completion connect failed trace=%s attempt=%s retries=%s retry_in=%.3fs error=%s",
                    tag,
                    attempt,
                    self._retries,
                    self._retry_delay,
                    exc,
                )
                if self._retry_delay > 0:
                    await asyncio.sleep(self._retry_delay)
                attempt += 1
            finally:
                LOG.debug(
                    "completion stream attempt closed trace=%s attempt=%s elapsed=%.3fs chunks=%s",
                    tag,
                    attempt,
                    time.monotonic() - started,
                    delivered,
                )

    async def _stream_once(self, req_payload: dict[str, Any], tag: str) -> AsyncGenerator[dict[str, Any], None]:
        """One request against the endpoint; yields chunks until `[DONE]` or EOF."""
        client = self._build_client()
        response: httpx.Response | None = None
        try:
            request = client.build_request("POST", _COMPLETIONS_PATH, headers=self._headers(), json=req_payload)
            response = await client.send(request, stream=True)
            if response.is_error:
                await response.aread()
            response.raise_for_status()
            async for line in response.aiter_lines():
                decoded = decode_sse_line(line)
                if decoded is STREAM_DONE:
                    LOG.debug("completion stream done marker trace=%s", tag)
                    return
                if decoded is not None:
                    yield decoded
        finally:
            cleanup_cancelled = False
            for resource in (response, client):
                if resource is None:
                    continue
                try:
                    await asyncio.shield(resource.aclose())
                except asyncio.CancelledError:
                    cleanup_cancelled = True
                except Exception:
                    LOG.debug("completion stream cleanup failed trace=%s", tag, exc_info=True)
            if cleanup_cancelled:
                raise asyncio.CancelledError
