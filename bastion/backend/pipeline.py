"""
backend/pipeline.py

Defines the asyncio.Queue instances that decouple the per-event path from
slower fan-out work, and the ring-buffer safe_put_nowait() helper used to
enqueue without blocking.

Queue sizing:
  alert_queue   =   500  — escalation / integrity alerts awaiting broadcast
  verdict_queue = 1_000  — finalized verdicts awaiting broadcast

Both queues use drop-oldest semantics: the event path must never wait on
a WebSocket client.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .metrics import METRICS

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Queue definitions: import these from other modules
# ---------------------------------------------------------------------------

# Lazily initialised so tests can create fresh queues without import side effects.
# Call init_queues() once at startup (done inside main.py).

alert_queue: asyncio.Queue | None = None
verdict_queue: asyncio.Queue | None = None


def init_queues(alert_size: int = 500, verdict_size: int = 1_000) -> None:
    """Initialise all pipeline queues."""
    global alert_queue, verdict_queue
    alert_queue = asyncio.Queue(maxsize=alert_size)
    verdict_queue = asyncio.Queue(maxsize=verdict_size)
    logger.info(
        "Pipeline queues initialised — sizes: alert=%d verdict=%d",
        alert_size,
        verdict_size,
    )


# ---------------------------------------------------------------------------
# Ring-buffer put helpers
# ---------------------------------------------------------------------------

def safe_put_nowait(queue: asyncio.Queue | None, item: Any) -> bool:
    """
    Non-blocking enqueue with ring-buffer drop semantics.

    If the queue is full, the *oldest* item is discarded to make room,
    METRICS.events_dropped is incremented, and a warning is logged.
    A queue that was never initialised is a silent no-op.

    Must be called from the event loop thread (asyncio.Queue is not
    thread-safe).
    """
    if queue is None:
        return False

    if queue.full():
        try:
            queue.get_nowait()  # discard oldest item
            METRICS.events_dropped.inc()
            logger.warning(
                "Queue full (%d/%d) — oldest item dropped to make room",
                queue.qsize(),
                queue.maxsize,
            )
        except asyncio.QueueEmpty:
            pass  # drained between the full() check and get_nowait()

    try:
        queue.put_nowait(item)
        return True
    except asyncio.QueueFull:
        METRICS.events_dropped.inc()
        logger.error("safe_put_nowait: queue still full after drop — item lost")
        return False
