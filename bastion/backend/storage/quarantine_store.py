"""
storage/quarantine_store.py

Keyed, TTL-bound block list read by the ingestion fast path.

Keys are subject keys ("ip:203.0.113.9", "user:alice|device:d1") or any
session key an integration chooses. Entries are immutable; a writer
replaces the entry for a key under the store lock, so the fast-path read
(one dict lookup plus an expiry comparison) never locks.

Re-quarantine rules, applied atomically in quarantine():
  - expires_at never moves backwards for a live entry
  - risk_score keeps the maximum seen
  - the reason follows the higher-scoring request
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuarantineEntry:
    key: str
    reason: str
    risk_score: int
    created_at: float
    expires_at: float
    auto: bool = True
    """True when created by the response executor, False for manual blocks."""

    hits: int = 0
    """Fast-path blocks served from this entry since it was last extended."""

    def is_active(self, now: float | None = None) -> bool:
        return (time.time() if now is None else now) < self.expires_at

    def remaining_seconds(self, now: float | None = None) -> float:
        return max(0.0, self.expires_at - (time.time() if now is None else now))

    def to_dict(self, now: float | None = None) -> dict[str, Any]:
        return {
            "key": self.key,
            "reason": self.reason,
            "risk_score": self.risk_score,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "remaining_seconds": round(self.remaining_seconds(now), 1),
            "auto": self.auto,
            "hits": self.hits,
        }


class QuarantineStore:
    def __init__(self) -> None:
        self._entries: dict[str, QuarantineEntry] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Fast path
    # ------------------------------------------------------------------

    def is_quarantined(self, key: str, now: float | None = None) -> QuarantineEntry | None:
        """Return the live entry for *key*, or None. Lock-free."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_active(now):
            return None
        return entry

    def record_hit(self, key: str) -> None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                self._entries[key] = replace(entry, hits=entry.hits + 1)

    # ------------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------------

    def quarantine(
        self,
        key: str,
        reason: str,
        risk_score: int,
        ttl_seconds: float,
        auto: bool = True,
        now: float | None = None,
    ) -> QuarantineEntry:
        """
        Insert or extend the entry for *key* and return the stored entry.

        Raises ValueError for a non-positive TTL: an entry must expire in
        the future at creation.
        """
        if ttl_seconds <= 0:
            raise ValueError(f"quarantine TTL must be positive, got {ttl_seconds}")
        now = time.time() if now is None else now
        new_expiry = now + ttl_seconds

        with self._lock:
            existing = self._entries.get(key)
            if existing is None or not existing.is_active(now):
                entry = QuarantineEntry(
                    key=key,
                    reason=reason,
                    risk_score=risk_score,
                    created_at=now,
                    expires_at=new_expiry,
                    auto=auto,
                )
            else:
                higher = risk_score >= existing.risk_score
                entry = replace(
                    existing,
                    reason=reason if higher else existing.reason,
                    risk_score=max(existing.risk_score, risk_score),
                    expires_at=max(existing.expires_at, new_expiry),
                    auto=existing.auto and auto,
                )
            self._entries[key] = entry

        logger.warning(
            "Quarantined %s until %.0f (score=%d, reason=%s)",
            key, entry.expires_at, entry.risk_score, entry.reason,
        )
        return entry

    def release(self, key: str) -> bool:
        with self._lock:
            removed = self._entries.pop(key, None)
        if removed is not None:
            logger.info("Released %s from quarantine", key)
        return removed is not None

    def purge_expired(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        with self._lock:
            expired = [k for k, e in self._entries.items() if not e.is_active(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Purged %d expired quarantine entr(y/ies)", len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def active(self, now: float | None = None) -> list[QuarantineEntry]:
        now = time.time() if now is None else now
        entries = list(self._entries.values())
        return sorted(
            (e for e in entries if e.is_active(now)),
            key=lambda e: e.expires_at,
            reverse=True,
        )

    def __len__(self) -> int:
        return len(self.active())
