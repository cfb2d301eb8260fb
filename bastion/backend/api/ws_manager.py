"""
api/ws_manager.py

WebSocketManager — manages active WebSocket connections across named channels.

Channels:
    "alerts"   — escalation and integrity alerts as they fire
    "verdicts" — every finalized Verdict
    "stats"    — pipeline counters on the periodic stats tick

Thread safety: designed to be called exclusively from asyncio coroutines.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class WebSocketManager:
    """Named broadcast channels, each with N WebSocket clients."""

    def __init__(self) -> None:
        self._channels: dict[str, set[WebSocket]] = defaultdict(set)
        self.sent: int = 0
        self.failed: int = 0

    async def connect(self, websocket: WebSocket, channel: str) -> None:
        await websocket.accept()
        self._channels[channel].add(websocket)
        logger.debug("WS connected — channel=%r total=%d", channel, len(self._channels[channel]))

    async def disconnect(self, websocket: WebSocket, channel: str) -> None:
        """Remove a WebSocket from its channel (no-op if not present)."""
        self._channels[channel].discard(websocket)
        logger.debug(
            "WS disconnected — channel=%r remaining=%d", channel, len(self._channels[channel]),
        )

    async def broadcast(self, channel: str, message: dict) -> int:
        """
        Send JSON-encoded *message* to every client on *channel*.
        Clients that error during send are dropped. Returns deliveries.
        """
        clients = list(self._channels[channel])
        if not clients:
            return 0

        payload = json.dumps(message, default=str)
        delivered = 0
        for ws in clients:
            try:
                await ws.send_text(payload)
                delivered += 1
            except Exception as exc:
                logger.debug("WS send failed (channel=%r): %s — removing", channel, exc)
                self._channels[channel].discard(ws)
                self.failed += 1
        self.sent += delivered
        return delivered

    async def pump(
        self,
        channel: str,
        queue: asyncio.Queue,
        shutdown_event: asyncio.Event,
    ) -> None:
        """Forward items from *queue* to *channel* until shutdown."""
        logger.info("WS pump started for channel %r", channel)
        while not shutdown_event.is_set():
            try:
                item = await asyncio.wait_for(queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            queue.task_done()
            await self.broadcast(channel, item)
        logger.info("WS pump for channel %r exiting", channel)

    def connection_count(self, channel: str) -> int:
        return len(self._channels[channel])

    def all_counts(self) -> dict[str, int]:
        return {ch: len(conns) for ch, conns in self._channels.items()}


# Global singleton: imported by routes and main.py
ws_manager = WebSocketManager()
