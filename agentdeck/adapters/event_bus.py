"""Async event bus bridging host components to panel consumers.

The orchestrator and UI multiplexer post panel events; the server's
SSE fan-out consumes them. One queue keeps the order in which events
were posted.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from agentdeck.adapters.events import PanelEvent

logger = logging.getLogger(__name__)


class EventBus:
    """Async queue bridging host callbacks to panel event consumers."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[PanelEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    async def emit(self, event: PanelEvent) -> None:
        if self._closed:
            return
        try:
            # backpressure instead of dropping
            await asyncio.wait_for(self._queue.put(event), timeout=30.0)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for 30s, dropping: %s (queue size: %d)",
                event.event_type,
                self._queue.qsize(),
            )

    def emit_nowait(self, event: PanelEvent) -> None:
        """Post from synchronous code; drops (with a log) when full."""
        if self._closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.error("EventBus full, dropping: %s", event.event_type)

    async def consume(self) -> AsyncIterator[PanelEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
                yield event
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

    def drain(self) -> list[PanelEvent]:
        """Remove and return every queued event without waiting."""
        events: list[PanelEvent] = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True

    def reset(self) -> None:
        """Drain leftover events and re-open the bus."""
        self.drain()
        self._closed = False
