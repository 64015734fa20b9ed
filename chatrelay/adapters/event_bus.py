"""Async event bus bridging the relay connection to its consumer.

The WebSocket reader task pushes frames in as they arrive; the
conversation front-end drains them in order through consume().
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from chatrelay.adapters.events import RelayEvent, from_frame
from chatrelay.engine.errors import UnrecognizedEventError

logger = logging.getLogger(__name__)


class EventBus:
    """Async queue between the connection reader and event consumers."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[RelayEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.quarantined = 0

    async def _callback(self, frame: dict[str, Any]) -> None:
        """Parse a wire frame and enqueue it."""
        if self._closed:
            return
        try:
            event = from_frame(frame)
        except UnrecognizedEventError as exc:
            self.quarantined += 1
            logger.warning("EventBus: quarantined frame: %s", exc)
            return
        await self.emit(event)

    def make_callback(self):
        """Return the async frame callback for the connection reader."""
        return self._callback

    async def emit(self, event: RelayEvent) -> None:
        if self._closed:
            return
        try:
            # Backpressure instead of dropping.
            await asyncio.wait_for(self._queue.put(event), timeout=30.0)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for 30s, dropping: %s (queue size: %d)",
                event.event_type,
                self._queue.qsize(),
            )

    async def consume(self) -> AsyncIterator[RelayEvent]:
        """Yield events as they arrive. Stops on close() once drained."""
        while True:
            if self._closed and self._queue.empty():
                return
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield event

    def close(self) -> None:
        """Stop the consumer loop after pending events are delivered."""
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed
