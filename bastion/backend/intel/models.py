"""
intel/models.py

Threat-intel data models.

IOC         — one indicator of compromise held in the local cache
FeedVerdict — the fixed output contract of a feed lookup
"""

from __future__ import annotations

import ipaddress
import time
from dataclasses import dataclass, field
from typing import Any

from ..models import IndicatorType

# Source priority → multiplier applied to IOC confidence
PRIORITY_WEIGHTS: dict[str, float] = {
    "high":   1.0,
    "medium": 0.8,
    "low":    0.6,
}


def normalize_indicator(kind: IndicatorType, value: str) -> str:
    """Canonical form used as the cache key."""
    value = value.strip()
    if kind is IndicatorType.IP:
        if "/" in value:
            return str(ipaddress.ip_network(value, strict=False))
        return str(ipaddress.ip_address(value))
    if kind in (IndicatorType.DOMAIN, IndicatorType.HASH):
        return value.lower().rstrip(".")
    return value


@dataclass(frozen=True)
class IOC:
    type: IndicatorType
    value: str
    confidence: float
    """Confidence in [0.0, 1.0]."""

    source: str = "local"
    priority: str = "medium"
    expires_at: float | None = None
    """Unix epoch; None = never expires."""

    threat_type: str = ""
    first_seen: float = field(default_factory=time.time)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"IOC confidence must be in [0, 1], got {self.confidence}")
        if self.priority not in PRIORITY_WEIGHTS:
            raise ValueError(f"unknown IOC priority {self.priority!r}")

    @property
    def key(self) -> tuple[IndicatorType, str]:
        return (self.type, self.value)

    @property
    def is_network(self) -> bool:
        return self.type is IndicatorType.IP and "/" in self.value

    def is_expired(self, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (time.time() if now is None else now) >= self.expires_at

    @property
    def threat_score(self) -> int:
        """Contribution proportional to confidence and source priority."""
        return int(round(self.confidence * 100 * PRIORITY_WEIGHTS[self.priority]))

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "IOC":
        kind = IndicatorType(str(d["type"]).lower())
        return cls(
            type=kind,
            value=normalize_indicator(kind, str(d["value"])),
            confidence=float(d.get("confidence", 0.5)),
            source=str(d.get("source", "local")),
            priority=str(d.get("priority", "medium")).lower(),
            expires_at=float(d["expires_at"]) if d.get("expires_at") is not None else None,
            threat_type=str(d.get("threat_type", "")),
            first_seen=float(d.get("first_seen", time.time())),
            metadata=dict(d.get("metadata") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "value": self.value,
            "confidence": self.confidence,
            "source": self.source,
            "priority": self.priority,
            "expires_at": self.expires_at,
            "threat_type": self.threat_type,
            "first_seen": self.first_seen,
            "metadata": self.metadata,
        }


@dataclass(slots=True)
class FeedVerdict:
    """Result of Lookup(indicator) -> {malicious, score, metadata}."""

    malicious: bool
    score: float
    """Feed threat score, 0 … 100."""

    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def confidence(self) -> float:
        return min(0.95, (self.score + 10.0) / 100.0)
