"""
engine/scoring.py

Pluggable behavioral scoring for the anomaly layer.

Any object with

    score(event, baseline)  -> (score 0..100, [named anomalies])
    update(event, baseline) -> None      # mutates baseline in place

can be handed to AnomalyLayer. score() must be a pure function of its
arguments; update() is always called under the subject's TrustStore
lock. EWMAScorer is the default statistical implementation.
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from typing import Protocol

from ..models import EventKind, SecurityEvent
from ..storage.trust_store import BehaviorBaseline

# Short-window rate decays with a one-minute half-life
_SHORT_HALF_LIFE = 60.0

# Counts are halved when the histogram total passes this, so old habits fade
_HISTOGRAM_CAP = 1000.0

SENSITIVE_PATH_RE = re.compile(
    r"(^|/)(admin|wp-admin|wp-login\.php|phpmyadmin|\.env|\.git|config|backup|"
    r"server-status|actuator|console|manager)(/|$|\.)",
    re.IGNORECASE,
)


class AnomalyScorer(Protocol):
    def score(self, event: SecurityEvent, baseline: BehaviorBaseline) -> tuple[int, list[str]]:
        ...

    def update(self, event: SecurityEvent, baseline: BehaviorBaseline) -> None:
        ...


def event_hour(event: SecurityEvent) -> int:
    """Hour of day (UTC); access requests carry their own context hour."""
    hour = event.context.get("hour") if event.kind is EventKind.ACCESS else None
    if isinstance(hour, int) and 0 <= hour <= 23:
        return hour
    return datetime.fromtimestamp(event.timestamp, tz=timezone.utc).hour


def event_path(event: SecurityEvent) -> str:
    if event.kind is EventKind.HTTP:
        return event.path
    return event.target


def _halve_if_over(table: dict[str, float]) -> None:
    if sum(table.values()) > _HISTOGRAM_CAP:
        for key in table:
            table[key] /= 2.0


class EWMAScorer:
    """
    Exponentially-weighted baseline comparison.

    Args:
        half_life_seconds: Half-life of the long-run request-rate average.
        warmup:            Observations required before anything is scored.
        spike_ratio:       short rate / long-run rate that counts as a spike.
        spike_min_rate:    Minimum short-window count for a spike.
        rare_hour_share:   Hour-of-day share below which activity is unusual.
        min_alpha:         Floor on the per-event EWMA weight, so a dense
                           stream still converges within a few dozen events.
    """

    def __init__(
        self,
        half_life_seconds: float = 3600.0,
        warmup: int = 10,
        spike_ratio: float = 3.0,
        spike_min_rate: float = 20.0,
        rare_hour_share: float = 0.02,
        min_alpha: float = 0.05,
    ) -> None:
        if half_life_seconds <= 0:
            raise ValueError("half_life_seconds must be positive")
        self.half_life_seconds = half_life_seconds
        self.warmup = warmup
        self.spike_ratio = spike_ratio
        self.spike_min_rate = spike_min_rate
        self.rare_hour_share = rare_hour_share
        self.min_alpha = min_alpha

    def alpha(self, dt: float) -> float:
        """EWMA weight for an observation *dt* seconds after the previous one."""
        a = 1.0 - math.exp(-math.log(2) * max(dt, 0.0) / self.half_life_seconds)
        return max(a, self.min_alpha)

    @staticmethod
    def _short_rate(event: SecurityEvent, baseline: BehaviorBaseline) -> float:
        if baseline.last_seen is None:
            return 1.0
        dt = max(0.0, event.timestamp - baseline.last_seen)
        return baseline.short_rate * 0.5 ** (dt / _SHORT_HALF_LIFE) + 1.0

    # ------------------------------------------------------------------
    # Score
    # ------------------------------------------------------------------

    def score(self, event: SecurityEvent, baseline: BehaviorBaseline) -> tuple[int, list[str]]:
        if baseline.observations < self.warmup:
            return 0, []

        score = 0
        reasons: list[str] = []

        short = self._short_rate(event, baseline)
        ratio = short / max(baseline.rate_ewma, 1.0)
        if short >= self.spike_min_rate and ratio >= self.spike_ratio:
            score += min(40, int(round(10 * ratio)))
            reasons.append("request-frequency-spike")

        total = sum(baseline.hour_weights)
        if total > 0:
            share = baseline.hour_weights[event_hour(event)] / total
            if share < self.rare_hour_share:
                score += 20
                reasons.append("unusual-time-of-day")

        path = event_path(event)
        if path and path not in baseline.paths and SENSITIVE_PATH_RE.search(path):
            score += 25
            reasons.append("suspicious-navigation")

        if event.country and baseline.countries and event.country not in baseline.countries:
            score += 15
            reasons.append("new-geo")

        return min(100, score), reasons

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def update(self, event: SecurityEvent, baseline: BehaviorBaseline) -> None:
        short = self._short_rate(event, baseline)
        if baseline.observations == 0:
            baseline.rate_ewma = short
        else:
            dt = max(0.0, event.timestamp - (baseline.last_seen or event.timestamp))
            a = self.alpha(dt)
            baseline.rate_ewma = a * short + (1.0 - a) * baseline.rate_ewma
        baseline.short_rate = short

        baseline.hour_weights[event_hour(event)] += 1.0
        if sum(baseline.hour_weights) > _HISTOGRAM_CAP:
            baseline.hour_weights = [w / 2.0 for w in baseline.hour_weights]

        path = event_path(event)
        if path:
            baseline.paths[path] = baseline.paths.get(path, 0.0) + 1.0
            _halve_if_over(baseline.paths)
            baseline.trim()

        if event.country:
            baseline.countries[event.country] = baseline.countries.get(event.country, 0.0) + 1.0
            _halve_if_over(baseline.countries)

        baseline.observations += 1
        baseline.last_seen = max(baseline.last_seen or event.timestamp, event.timestamp)
