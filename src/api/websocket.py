"""WebSocket connection manager for streaming disposition changes to admins."""
from __future__ import annotations

import logging
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Tracks dashboard WebSocket clients and fans out disposition events.

    ``broadcast`` matches ``BookingRiskEngine``'s ``broadcast_callback``
    signature, so the engine can push every transition straight to the
    review queue.
    """

    def __init__(self) -> None:
        self.active_connections: list[WebSocket] = []

    async def connect(self, websocket: WebSocket) -> None:
        """Accept and register a new dashboard connection."""
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info("Dashboard connected. Total: %d", len(self.active_connections))

    def disconnect(self, websocket: WebSocket) -> None:
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        logger.info("Dashboard disconnected. Total: %d", len(self.active_connections))

    async def broadcast(self, message: dict[str, Any]) -> None:
        """Send one event to every connected client.

        Clients that fail to receive the message are dropped; a slow or
        broken dashboard never blocks a disposition change.

        Args:
            message: JSON-serialisable event payload.
        """
        disconnected: list[WebSocket] = []
        for connection in list(self.active_connections):
            try:
                await connection.send_json(message)
            except Exception:
                logger.debug("Dropping dashboard connection after failed send", exc_info=True)
                disconnected.append(connection)
        for conn in disconnected:
            self.disconnect(conn)


manager = ConnectionManager()
