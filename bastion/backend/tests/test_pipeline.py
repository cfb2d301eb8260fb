"""
tests/test_pipeline.py

Tests for pipeline.py — queue init + safe_put_nowait ring-buffer behavior.
"""

from __future__ import annotations

import asyncio

import pytest

from bastion.backend.metrics import METRICS
from bastion.backend.pipeline import init_queues, safe_put_nowait


@pytest.fixture(autouse=True)
def _reset_metrics():
    """Reset drop counter before each test."""
    METRICS.events_dropped.reset()
    yield


# ---------------------------------------------------------------------------
# init_queues
# ---------------------------------------------------------------------------

class TestInitQueues:

    def test_creates_all_queues(self):
        init_queues(alert_size=3, verdict_size=7)
        from bastion.backend import pipeline
        assert pipeline.alert_queue.maxsize == 3
        assert pipeline.verdict_queue.maxsize == 7

    def test_queues_are_empty_after_init(self):
        init_queues(alert_size=5, verdict_size=5)
        from bastion.backend import pipeline
        assert pipeline.alert_queue.empty()
        assert pipeline.verdict_queue.empty()


# ---------------------------------------------------------------------------
# safe_put_nowait: ring-buffer behavior
# ---------------------------------------------------------------------------

class TestSafePut:

    @pytest.mark.asyncio
    async def test_puts_into_non_full_queue(self):
        q: asyncio.Queue = asyncio.Queue(maxsize=3)
        result = safe_put_nowait(q, "item1")
        assert result is True
        assert q.qsize() == 1

    @pytest.mark.asyncio
    async def test_drops_oldest_when_full(self):
        q: asyncio.Queue = asyncio.Queue(maxsize=2)
        await q.put("old_1")
        await q.put("old_2")
        assert q.full()

        result = safe_put_nowait(q, "new_1")
        assert result is True
        items = []
        while not q.empty():
            items.append(q.get_nowait())
        assert items == ["old_2", "new_1"]

    @pytest.mark.asyncio
    async def test_increments_drop_counter(self):
        q: asyncio.Queue = asyncio.Queue(maxsize=1)
        await q.put("first")
        before = METRICS.events_dropped.value
        safe_put_nowait(q, "second")
        assert METRICS.events_dropped.value == before + 1

    @pytest.mark.asyncio
    async def test_sequential_puts_ring_buffer(self):
        q: asyncio.Queue = asyncio.Queue(maxsize=3)
        for i in range(5):
            safe_put_nowait(q, i)
        items = []
        while not q.empty():
            items.append(q.get_nowait())
        assert items == [2, 3, 4]

    def test_uninitialised_queue_is_noop(self):
        assert safe_put_nowait(None, {"x": 1}) is False
        assert METRICS.events_dropped.value == 0
