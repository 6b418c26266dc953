"""Kestrel — WebSocket Connection Manager.

Consumers (map overlays, notification badge) connect to /ws and receive
two channels:

  signals  every batch of emitted signals
  scores   the full score state after each refresh cycle

A client narrows its feed by sending {"subscribe": ["signals"]}.
"""

import json
import logging
from datetime import datetime, timezone
from fastapi import WebSocket

from backend.models import Signal

logger = logging.getLogger("kestrel.ws")

CHANNELS = frozenset({"signals", "scores"})


def envelope(action: str, data, **extra) -> dict:
    """Standard message envelope for map/UI consumers."""
    return {
        "action": action,
        "data": data,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **extra,
    }


class ConnectionManager:
    """Tracks consumer WebSockets and their channel subscriptions."""

    def __init__(self):
        self._connections: dict[WebSocket, set[str]] = {}

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self._connections[websocket] = set(CHANNELS)
        logger.info("WebSocket client connected (%d total)", len(self._connections))

    def disconnect(self, websocket: WebSocket):
        self._connections.pop(websocket, None)
        logger.info("WebSocket client disconnected (%d remaining)", len(self._connections))

    def handle_client_message(self, websocket: WebSocket, text: str) -> set[str]:
        """Apply a subscription message; anything else is ignored."""
        try:
            message = json.loads(text)
            requested = set(message["subscribe"])
        except (ValueError, KeyError, TypeError) as e:
            logger.debug("Ignoring client message %r: %s", text[:80], e)
            return self._connections.get(websocket, set())

        channels = requested & CHANNELS
        if websocket in self._connections:
            self._connections[websocket] = channels
            logger.debug("Client subscribed to %s", sorted(channels))
        return channels

    async def broadcast(self, message: dict, channel: str | None = None):
        """Send to every client subscribed to `channel` (all clients when None)."""
        targets = [
            ws for ws, channels in self._connections.items()
            if channel is None or channel in channels
        ]
        if not targets:
            return

        payload = json.dumps(message, default=str)
        disconnected = []

        for ws in targets:
            try:
                await ws.send_text(payload)
            except Exception as e:
                logger.debug("WebSocket send failed: %s", e)
                disconnected.append(ws)

        for ws in disconnected:
            self.disconnect(ws)

    async def broadcast_signals(self, signals: list[Signal]):
        """SignalEmitter subscriber: push emitted signals (notification badge feed)."""
        await self.broadcast(
            envelope("signals", [s.model_dump(mode="json") for s in signals], count=len(signals)),
            channel="signals",
        )

    async def broadcast_scores(self, state: dict):
        await self.broadcast(envelope("scores", state), channel="scores")

    async def send_to(self, websocket: WebSocket, message: dict):
        try:
            await websocket.send_text(json.dumps(message, default=str))
        except Exception as e:
            logger.debug("WebSocket send failed: %s", e)
            self.disconnect(websocket)

    @property
    def connection_count(self) -> int:
        return len(self._connections)
