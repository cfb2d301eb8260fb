"""
storage/trust_store.py

Per-subject running trust state and behavioral baseline.

A TrustProfile is created on first sighting of a subject (IP, or
user+device pair), updated after every verification and every finalized
verdict, and never hard-deleted: an idle profile decays toward the
neutral score instead.

Concurrency:
  - Every mutation goes through update(subject, fn), which serializes on a
    per-subject lock. Two events from the same subject are therefore
    applied in order; events from different subjects never contend.
  - Readers call get(subject) and receive a deep copy, so a detection
    layer can score against a stable baseline while another thread
    updates the live profile.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

NEUTRAL_TRUST = 50.0
_MAX_TRACKED_PATHS = 200


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class BehaviorBaseline:
    """Rolling behavioral features, maintained by the anomaly layer."""

    observations: int = 0
    last_seen: float | None = None
    short_rate: float = 0.0
    """Decayed event count over roughly the last minute."""

    rate_ewma: float = 0.0
    """Long-run average of short_rate."""

    hour_weights: list[float] = field(default_factory=lambda: [0.0] * 24)
    paths: dict[str, float] = field(default_factory=dict)
    """Visit count per path."""

    countries: dict[str, float] = field(default_factory=dict)

    def trim(self) -> None:
        """Drop the lightest entries once the maps grow past their cap."""
        if len(self.paths) > _MAX_TRACKED_PATHS:
            keep = sorted(self.paths.items(), key=lambda kv: kv[1], reverse=True)[:_MAX_TRACKED_PATHS]
            self.paths.clear()
            self.paths.update(keep)

    def to_dict(self) -> dict[str, Any]:
        return {
            "observations": self.observations,
            "last_seen": self.last_seen,
            "rate_ewma": round(self.rate_ewma, 3),
            "known_paths": len(self.paths),
            "known_countries": sorted(self.countries),
        }


@dataclass
class TrustProfile:
    subject_id: str
    trust_score: float = NEUTRAL_TRUST
    factors: dict[str, float] = field(default_factory=dict)
    """Breakdown from the most recent zero-trust verification."""

    created_at: float = field(default_factory=time.time)
    last_updated: float = field(default_factory=time.time)
    version: int = 0
    verifications: int = 0
    denials: int = 0
    baseline: BehaviorBaseline = field(default_factory=BehaviorBaseline)

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "trust_score": round(self.trust_score, 2),
            "factors": dict(self.factors),
            "created_at": self.created_at,
            "last_updated": self.last_updated,
            "version": self.version,
            "verifications": self.verifications,
            "denials": self.denials,
            "baseline": self.baseline.to_dict(),
        }


def decayed_trust(score: float, idle_seconds: float, half_life_seconds: float) -> float:
    """Pull *score* toward neutral by half the gap every *half_life_seconds*."""
    if idle_seconds <= 0 or half_life_seconds <= 0:
        return score
    factor = 0.5 ** (idle_seconds / half_life_seconds)
    return NEUTRAL_TRUST + (score - NEUTRAL_TRUST) * factor


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class TrustStore:
    """
    Args:
        decay_half_life_seconds: Idle decay toward NEUTRAL_TRUST.
        outcome_weight:          EWMA weight of one verdict in record_outcome().
    """

    def __init__(
        self,
        decay_half_life_seconds: float = 86_400.0,
        outcome_weight: float = 0.2,
    ) -> None:
        self.decay_half_life_seconds = decay_half_life_seconds
        self.outcome_weight = outcome_weight
        self._profiles: dict[str, TrustProfile] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, subject: str) -> threading.Lock:
        lock = self._locks.get(subject)
        if lock is None:
            with self._locks_guard:
                lock = self._locks.setdefault(subject, threading.Lock())
        return lock

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get(self, subject: str, now: float | None = None) -> TrustProfile | None:
        """Deep copy of the profile with idle decay applied, or None."""
        with self._lock_for(subject):
            profile = self._profiles.get(subject)
            if profile is None:
                return None
            snap = copy.deepcopy(profile)
        now = time.time() if now is None else now
        snap.trust_score = decayed_trust(
            snap.trust_score, now - snap.last_updated, self.decay_half_life_seconds
        )
        return snap

    def __contains__(self, subject: str) -> bool:
        return subject in self._profiles

    def __len__(self) -> int:
        return len(self._profiles)

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------

    def update(
        self,
        subject: str,
        fn: Callable[[TrustProfile], T],
        now: float | None = None,
    ) -> T:
        """
        Apply *fn* to the live profile under the subject's lock.

        The profile is created on first sighting and decayed to *now*
        before *fn* sees it. Returns whatever *fn* returns.
        """
        now = time.time() if now is None else now
        with self._lock_for(subject):
            return self._apply(subject, fn, now)

    def _apply(self, subject: str, fn: Callable[[TrustProfile], T], now: float) -> T:
        # Caller holds the subject lock
        profile = self._profiles.get(subject)
        if profile is None:
            profile = TrustProfile(subject_id=subject, created_at=now, last_updated=now)
            self._profiles[subject] = profile
            logger.debug("TrustProfile created for %s", subject)
        else:
            profile.trust_score = decayed_trust(
                profile.trust_score, now - profile.last_updated, self.decay_half_life_seconds
            )
        result = fn(profile)
        profile.trust_score = max(0.0, min(100.0, profile.trust_score))
        profile.last_updated = max(profile.last_updated, now)
        profile.version += 1
        return result

    def record_verification(
        self,
        subject: str,
        trust_score: float,
        factors: dict[str, float],
        allowed: bool,
        now: float | None = None,
    ) -> None:
        def apply(p: TrustProfile) -> None:
            p.trust_score = trust_score
            p.factors = dict(factors)
            p.verifications += 1
            if not allowed:
                p.denials += 1

        self.update(subject, apply, now=now)

    def record_outcome(self, subject: str, risk_score: int, now: float | None = None) -> float:
        """Move running trust toward (100 - risk). Returns the new trust score."""
        target = 100.0 - risk_score
        w = self.outcome_weight

        def apply(p: TrustProfile) -> float:
            p.trust_score = (1 - w) * p.trust_score + w * target
            return p.trust_score

        return self.update(subject, apply, now=now)

    def profiles(self, limit: int = 100) -> list[dict[str, Any]]:
        subjects = list(self._profiles)[:limit]
        return [p.to_dict() for s in subjects if (p := self.get(s)) is not None]
