"""Typed events exchanged between one run's producers and the stream translator."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Union


@dataclass(frozen=True)
class ChunkEvent:
    """One model chunk to forward to the caller."""

    chunk: dict[str, Any]


@dataclass(frozen=True)
class UpdateEvent:
    """Progress narration text from the PlanetScale client."""

    text: str


@dataclass(frozen=True)
class ReferenceEvent:
    """Entities touched by a PlanetScale call, ready for citation."""

    references: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class ErrorEvent:
    """Terminal failure of a run."""

    message: str
    code: str = "agent_error"


@dataclass(frozen=True)
class EndEvent:
    """Successful completion of a run."""


Event = Union[ChunkEvent, UpdateEvent, ReferenceEvent, ErrorEvent, EndEvent]

_CLOSED = object()


class EventChannel:
    """Unbounded FIFO of events with a single consumer.

    Producers call `emit` and never block. Once closed, emits are dropped and
    iteration ends after the already queued events are drained.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: Event) -> None:
        if self._closed:
            return
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def abort(self) -> None:
        """Drop every event not yet consumed and close the channel."""
        while not self._queue.empty():
            self._queue.get_nowait()
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[Event]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Event]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item
