"""Async event bus bridging registry mutations to UI consumers.

The registry emits events after each mutation; the TUI (or the headless
printer) drains them in its consumer loop.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from gensui.adapters.events import WorkerEvent

logger = logging.getLogger(__name__)


class EventBus:
    """Async queue bridging engine events to consumers."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[WorkerEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def emit(self, event: WorkerEvent) -> None:
        """Queue an event, waiting up to 30s for room before dropping it."""
        if self._closed:
            return
        try:
            await asyncio.wait_for(self._queue.put(event), timeout=30.0)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for 30s, dropping: %s (queue size: %d)",
                event.event_type,
                self._queue.qsize(),
            )

    def emit_nowait(self, event: WorkerEvent) -> bool:
        """Queue an event from synchronous code. Drops it when the queue is full."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.error(
                "EventBus queue full, dropping: %s (queue size: %d)",
                event.event_type,
                self._queue.qsize(),
            )
            return False
        return True

    async def consume(self) -> AsyncIterator[WorkerEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
                yield event
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

    def drain(self) -> list[WorkerEvent]:
        """Return and remove everything currently queued."""
        events: list[WorkerEvent] = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True
