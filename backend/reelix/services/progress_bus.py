"""Progress event bus - non-blocking fan-out of events to observers.

The scheduler publishes from the event loop; every subscriber owns a bounded
queue. Publishing never awaits: when a subscriber falls behind, its oldest
event is discarded so the newest state always gets through. Observers that
lost events can resynchronize by polling job status.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

logger = logging.getLogger(__name__)


class Subscription:
    """One reader's view of the bus. Iterate it to receive events."""

    def __init__(self, bus: "ProgressEventBus", maxsize: int):
        self._bus = bus
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def _offer(self, event: dict[str, Any]) -> None:
        if self.closed:
            return
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except asyncio.QueueEmpty:
                    pass

    def pending(self) -> int:
        return self._queue.qsize()

    def get_nowait(self) -> dict[str, Any]:
        return self._queue.get_nowait()

    async def get(self) -> dict[str, Any]:
        return await self._queue.get()

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        return self

    async def __anext__(self) -> dict[str, Any]:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        return await self._queue.get()


class ProgressEventBus:
    """Single-writer, multi-reader event fan-out."""

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: list[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        sub = Subscription(self, self._queue_size)
        self._subscribers.append(sub)
        logger.debug(f"Event subscriber attached. Total subscribers: {len(self._subscribers)}")
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        """Detach a subscriber. Safe to call more than once."""
        sub.closed = True
        if sub in self._subscribers:
            self._subscribers.remove(sub)
            logger.debug(f"Event subscriber detached. Total subscribers: {len(self._subscribers)}")
            if sub.dropped:
                logger.info(f"Subscriber detached after dropping {sub.dropped} events")

    def publish(self, event: dict[str, Any]) -> None:
        """Deliver an event to every subscriber without blocking."""
        for sub in list(self._subscribers):
            sub._offer(event)
