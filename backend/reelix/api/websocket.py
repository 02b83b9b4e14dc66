"""WebSocket connection manager for real-time updates."""

import asyncio
import json
import logging

from fastapi import WebSocket

from reelix.services.progress_bus import ProgressEventBus, Subscription
from reelix.services.runtime import event_bus

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Attaches each WebSocket client to the progress bus.

    Every client gets its own bus subscription and sender task, so a slow
    client only ever loses its own oldest events.
    """

    def __init__(self, bus: ProgressEventBus) -> None:
        self._bus = bus
        self.active_connections: dict[WebSocket, tuple[Subscription, asyncio.Task]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> None:
        """Accept a new WebSocket connection and start forwarding events."""
        await websocket.accept()
        subscription = self._bus.subscribe()
        sender = asyncio.create_task(self._forward(websocket, subscription))
        async with self._lock:
            self.active_connections[websocket] = (subscription, sender)
        logger.info(f"Client connected. Total connections: {len(self.active_connections)}")

    async def disconnect(self, websocket: WebSocket) -> None:
        """Remove a WebSocket connection."""
        async with self._lock:
            entry = self.active_connections.pop(websocket, None)
        if entry is not None:
            subscription, sender = entry
            subscription.close()
            sender.cancel()
        logger.info(f"Client disconnected. Total connections: {len(self.active_connections)}")

    async def _forward(self, websocket: WebSocket, subscription: Subscription) -> None:
        async for event in subscription:
            try:
                await websocket.send_text(json.dumps(event))
            except Exception as e:
                logger.warning(f"Failed to send message: {e}")
                subscription.close()
                return


# Singleton instance
manager = ConnectionManager(event_bus)
