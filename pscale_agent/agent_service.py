"""Agent service runtime: wires one isolated run per inbound request."""

from __future__ import annotations

import logging
from typing import Any, AsyncGenerator

import httpx

from .cancellation import CancelToken
from .chat_handlers import run_stream
from .completion import CompletionClient
from .config import AgentConfig
from .events import EventChannel
from .orchestrator import CompletionRun
from .pscale_client import PscaleClient

LOG = logging.getLogger(__name__)


class AgentService:
    """Runtime container for the completion client and per-request runs."""

    def __init__(
        self,
        cfg: AgentConfig,
        *,
        completion: CompletionClient | None = None,
        pscale_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.cfg = cfg
        self.completion = completion or CompletionClient(cfg)
        self._pscale_transport = pscale_transport

    def create_run(self, messages: list[dict[str, Any]]) -> CompletionRun:
        """Build a run that exclusively owns a fresh channel and PlanetScale client."""
        channel = EventChannel()
        token = CancelToken()
        pscale = PscaleClient(self.cfg, channel, token=token, transport=self._pscale_transport)
        return CompletionRun(
            model=self.cfg.model,
            max_tool_loops=self.cfg.max_tool_loops,
            completion=self.completion,
            pscale=pscale,
            channel=channel,
            messages=messages,
            token=token,
        )

    def stream_chat(self, messages: list[dict[str, Any]]) -> AsyncGenerator[bytes, None]:
        """Start one run and return its SSE byte stream."""
        run = self.create_run(messages)
        LOG.debug("chat stream start run=%s messages=%s", run.run_id, len(messages))
        return run_stream(run, on_finish=run.pscale.close)
