"""
ingest/rate_limiter.py

Per-IP sliding-window rate limiter used on the fast path.

Checks:
  1. Whitelist → always allowed
  2. Burst     → more than `burst` requests inside one second
  3. Sustained → more than `requests_per_minute` inside a sliding 60s window

All decision logic is synchronous and fast (no I/O). A lock guards the
per-key deques because the processor may be driven from several threads
(e.g. the ASGI middleware under a threaded server).
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Iterable

logger = logging.getLogger(__name__)

_WINDOW_SECONDS = 60.0
_MAX_KEYS = 100_000


class RateLimiter:
    def __init__(
        self,
        requests_per_minute: int = 600,
        burst: int = 100,
        whitelist: Iterable[str] = (),
    ) -> None:
        self.requests_per_minute = requests_per_minute
        self.burst = burst
        self._whitelist: frozenset[str] = frozenset(whitelist)
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.requests_per_minute > 0

    def check(self, key: str, now: float | None = None) -> tuple[bool, str]:
        """
        Record one request for *key* and return (allowed, reason).

        Reasons: WHITELISTED, DISABLED, BURST, RATE, OK.
        """
        if key in self._whitelist:
            return True, "WHITELISTED"
        if not self.enabled:
            return True, "DISABLED"

        now = time.monotonic() if now is None else now
        with self._lock:
            hits = self._hits.get(key)
            if hits is None:
                if len(self._hits) >= _MAX_KEYS:
                    self._evict_idle(now)
                hits = self._hits[key] = deque()

            while hits and now - hits[0] >= _WINDOW_SECONDS:
                hits.popleft()

            if len(hits) >= self.requests_per_minute:
                return False, "RATE"
            if self.burst > 0:
                recent = sum(1 for t in reversed(hits) if now - t < 1.0)
                if recent >= self.burst:
                    return False, "BURST"

            hits.append(now)
        return True, "OK"

    def _evict_idle(self, now: float) -> None:
        idle = [k for k, d in self._hits.items() if not d or now - d[-1] >= _WINDOW_SECONDS]
        for k in idle:
            del self._hits[k]
        logger.debug("RateLimiter evicted %d idle key(s)", len(idle))

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)
