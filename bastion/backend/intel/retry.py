"""
intel/retry.py

Exponential backoff with jitter for threat-feed calls.

Only the background refresher uses this; nothing on the per-event path
ever waits on a retry.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

import httpx

from ..errors import ExternalFeedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable(exc: Exception) -> bool:
    if isinstance(exc, ExternalFeedError):
        return exc.retryable
    return isinstance(exc, (httpx.TransportError, asyncio.TimeoutError))


async def async_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 0.6,
    max_delay: float = 4.0,
    jitter: float = 0.25,
    retry_if: Callable[[Exception], bool] = is_retryable,
) -> T:
    """
    Await fn() up to *attempts* times.

    Delay before retry i (0-based) is min(max_delay, base_delay * 2**i),
    scaled by a random factor in [1 - jitter, 1 + jitter]. Non-retryable
    errors and the last failure are re-raised unchanged.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    for i in range(attempts):
        try:
            return await fn()
        except Exception as exc:
            if i == attempts - 1 or not retry_if(exc):
                raise
            delay = min(max_delay, base_delay * (2 ** i))
            delay *= 1.0 + random.uniform(-jitter, jitter)
            logger.debug("Retry %d/%d in %.2fs after %s", i + 1, attempts - 1, delay, exc)
            await asyncio.sleep(max(0.0, delay))

    raise RuntimeError("async_retry exhausted without an exception")  # pragma: no cover
