"""Cancellation token shared by one run and the PlanetScale client it owns."""

from __future__ import annotations

import asyncio


class RunAborted(Exception):
    """Raised at a suspension point once the caller has aborted the run."""


class CancelToken:
    """One-shot abort flag checked before every outbound call of a run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "aborted") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunAborted(self.reason or "aborted")

    async def wait(self) -> None:
        await self._event.wait()
