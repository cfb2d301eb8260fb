"""
intel/refresher.py

Background threat-intel refresher.

Runs on its own schedule, off the per-event path:
  1. Drain the watchlist (indicators submitted by the pipeline or the API)
  2. Look each one up through the feed client, with retry + backoff
  3. Write malicious results into the IOC cache as one atomic batch
  4. Purge expired IOCs

Feed failures are logged and counted; the cache keeps serving the last
good snapshot. The feed client enforces its own minimum call spacing.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import OrderedDict
from typing import TYPE_CHECKING, Any, Iterable

from ..errors import ExternalFeedError
from ..models import IndicatorType
from .models import IOC, normalize_indicator
from .retry import async_retry

if TYPE_CHECKING:
    from ..storage.ioc_store import IOCCache
    from .feed_client import ThreatFeedClient

logger = logging.getLogger(__name__)

_MAX_PENDING = 1_000
_MAX_PER_CYCLE = 50
# Do not re-query an indicator the feed answered within this window
_RECHECK_SECONDS = 3600.0


class ThreatIntelRefresher:
    """
    Args:
        client:           Feed client (Lookup contract).
        ioc_cache:        Cache the results are written into.
        priority:         Source priority stamped on feed-derived IOCs.
        ioc_ttl_hours:    Expiry applied to feed-derived IOCs.
        refresh_seconds:  Sleep between cycles.
    """

    def __init__(
        self,
        client: "ThreatFeedClient",
        ioc_cache: "IOCCache",
        priority: str = "medium",
        ioc_ttl_hours: float = 24,
        refresh_seconds: float = 60,
        max_per_cycle: int = _MAX_PER_CYCLE,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.6,
    ) -> None:
        self.client = client
        self.ioc_cache = ioc_cache
        self.priority = priority
        self.ioc_ttl_seconds = ioc_ttl_hours * 3600
        self.refresh_seconds = refresh_seconds
        self.max_per_cycle = max_per_cycle
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay

        self._pending: OrderedDict[tuple[IndicatorType, str], None] = OrderedDict()
        self._checked: dict[tuple[IndicatorType, str], float] = {}
        # submit() is called from the event loop and from worker threads
        self._lock = threading.Lock()

        self.cycles = 0
        self.last_refresh: float | None = None
        self.last_error: str | None = None
        self.stats: dict[str, int] = {
            "submitted": 0,
            "looked_up": 0,
            "malicious": 0,
            "failed": 0,
            "dropped": 0,
        }

    @property
    def enabled(self) -> bool:
        return self.client.enabled

    # ------------------------------------------------------------------
    # Watchlist
    # ------------------------------------------------------------------

    def submit(self, indicators: Iterable[tuple[IndicatorType | str, str]]) -> int:
        """Queue indicators for lookup. Returns how many were newly queued."""
        added = 0
        now = time.time()
        with self._lock:
            for kind, value in indicators:
                try:
                    kind = IndicatorType(kind)
                    key = (kind, normalize_indicator(kind, value))
                except ValueError:
                    logger.debug("Ignoring invalid indicator %r=%r", kind, value)
                    continue
                if key in self._pending:
                    continue
                checked = self._checked.get(key)
                if checked is not None and now - checked < _RECHECK_SECONDS:
                    continue
                if len(self._pending) >= _MAX_PENDING:
                    self._pending.popitem(last=False)
                    self.stats["dropped"] += 1
                self._pending[key] = None
                added += 1
            self.stats["submitted"] += added
        return added

    def _take(self, limit: int) -> list[tuple[IndicatorType, str]]:
        with self._lock:
            batch = []
            while self._pending and len(batch) < limit:
                key, _ = self._pending.popitem(last=False)
                batch.append(key)
            return batch

    @property
    def pending(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh_once(self, now: float | None = None) -> int:
        """Run one cycle. Returns the number of IOCs written to the cache."""
        self.cycles += 1
        self.ioc_cache.purge_expired(now)
        if not self.enabled:
            return 0

        batch = self._take(self.max_per_cycle)
        upserts: list[IOC] = []
        for kind, value in batch:
            try:
                verdict = await async_retry(
                    lambda k=kind, v=value: self.client.lookup(k, v),
                    attempts=self.retry_attempts,
                    base_delay=self.retry_base_delay,
                )
            except ExternalFeedError as exc:
                self.stats["failed"] += 1
                self.last_error = str(exc)
                logger.warning("Threat feed lookup failed for %s=%s: %s", kind.value, value, exc)
                continue

            self.stats["looked_up"] += 1
            stamp = time.time() if now is None else now
            self._checked[(kind, value)] = stamp
            if verdict is None or not verdict.malicious:
                continue

            self.stats["malicious"] += 1
            upserts.append(IOC(
                type=kind,
                value=value,
                confidence=verdict.confidence,
                source=self.client.name,
                priority=self.priority,
                expires_at=stamp + self.ioc_ttl_seconds,
                threat_type="feed",
                first_seen=stamp,
                metadata={"feed_score": verdict.score, **verdict.metadata},
            ))

        if upserts:
            version = self.ioc_cache.apply(upserts, now=now)
            logger.info("Threat feed added %d IOC(s) (cache v%d)", len(upserts), version)
        self._prune_checked(now)
        self.last_refresh = time.time() if now is None else now
        return len(upserts)

    def _prune_checked(self, now: float | None) -> None:
        now = time.time() if now is None else now
        stale = [k for k, t in self._checked.items() if now - t >= _RECHECK_SECONDS]
        for k in stale:
            del self._checked[k]

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Loop until *shutdown_event* is set."""
        logger.info(
            "Threat-intel refresher started (feed=%s enabled=%s every %ss)",
            self.client.name, self.enabled, self.refresh_seconds,
        )
        while not shutdown_event.is_set():
            try:
                await self.refresh_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.last_error = str(exc)
                logger.exception("Threat-intel refresh cycle failed: %s", exc)
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.refresh_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Threat-intel refresher stopped")

    def status(self) -> dict[str, Any]:
        return {
            "feed": self.client.name,
            "enabled": self.enabled,
            "pending": self.pending,
            "cycles": self.cycles,
            "last_refresh": self.last_refresh,
            "last_error": self.last_error,
            "stats": dict(self.stats),
            "cache": self.ioc_cache.stats(),
        }
