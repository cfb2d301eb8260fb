"""
tests/test_ws_manager.py

Tests for api/ws_manager.py — WebSocket channel manager.
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from bastion.backend.api.ws_manager import WebSocketManager


@pytest.fixture
def manager():
    return WebSocketManager()


def mock_ws(accept_side_effect=None):
    ws = AsyncMock()
    ws.accept = AsyncMock(side_effect=accept_side_effect)
    ws.send_text = AsyncMock()
    return ws


class TestConnect:

    @pytest.mark.asyncio
    async def test_connect_accepts_and_registers(self, manager):
        ws = mock_ws()
        await manager.connect(ws, "alerts")
        ws.accept.assert_called_once()
        assert manager.connection_count("alerts") == 1

    @pytest.mark.asyncio
    async def test_disconnect_removes_connection(self, manager):
        ws = mock_ws()
        await manager.connect(ws, "verdicts")
        await manager.disconnect(ws, "verdicts")
        assert manager.connection_count("verdicts") == 0

    @pytest.mark.asyncio
    async def test_disconnect_nonexistent_is_noop(self, manager):
        await manager.disconnect(mock_ws(), "alerts")
        assert manager.connection_count("alerts") == 0


class TestBroadcast:

    @pytest.mark.asyncio
    async def test_broadcast_sends_json_to_all(self, manager):
        ws1 = mock_ws()
        ws2 = mock_ws()
        await manager.connect(ws1, "alerts")
        await manager.connect(ws2, "alerts")

        message = {"kind": "escalation", "subject_key": "ip:203.0.113.9"}
        delivered = await manager.broadcast("alerts", message)

        assert delivered == 2
        expected = json.dumps(message, default=str)
        ws1.send_text.assert_called_once_with(expected)
        ws2.send_text.assert_called_once_with(expected)

    @pytest.mark.asyncio
    async def test_broadcast_removes_dead_connections(self, manager):
        ws_good = mock_ws()
        ws_bad = mock_ws()
        ws_bad.send_text = AsyncMock(side_effect=RuntimeError("connection reset"))

        await manager.connect(ws_good, "verdicts")
        await manager.connect(ws_bad, "verdicts")

        delivered = await manager.broadcast("verdicts", {"action": "allow"})

        assert delivered == 1
        assert manager.connection_count("verdicts") == 1
        assert manager.failed == 1

    @pytest.mark.asyncio
    async def test_broadcast_to_empty_channel_is_noop(self, manager):
        assert await manager.broadcast("nonexistent", {"data": 1}) == 0


class TestPump:

    @pytest.mark.asyncio
    async def test_pump_forwards_queue_items_until_shutdown(self, manager):
        ws = mock_ws()
        await manager.connect(ws, "verdicts")
        queue: asyncio.Queue = asyncio.Queue()
        shutdown = asyncio.Event()
        await queue.put({"event_id": "e1"})

        task = asyncio.create_task(manager.pump("verdicts", queue, shutdown))
        for _ in range(50):
            if ws.send_text.called:
                break
            await asyncio.sleep(0.01)
        shutdown.set()
        await asyncio.wait_for(task, timeout=2)

        ws.send_text.assert_called_once_with(json.dumps({"event_id": "e1"}))
        assert queue.empty()


class TestConnectionCount:

    @pytest.mark.asyncio
    async def test_all_counts(self, manager):
        await manager.connect(mock_ws(), "alerts")
        await manager.connect(mock_ws(), "verdicts")
        assert manager.all_counts() == {"alerts": 1, "verdicts": 1}

    def test_unknown_channel_returns_zero(self, manager):
        assert manager.connection_count("nonexistent") == 0
