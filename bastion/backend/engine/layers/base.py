"""
engine/layers/base.py

Abstract base class that all detection layers must implement.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from ...models import EventKind, SecurityEvent
from ..models import DetectionResult


class BaseLayer(ABC):
    """
    Contract that every detection layer must satisfy.

    Class-level attributes:
        name      — unique snake_case identifier used in Verdict.layers
        kinds     — event kinds this layer applies to
        enabled   — False to skip the layer entirely
        fail_safe — a timeout or error in this layer must deny rather than
                    contribute zero (zero-trust only)

    The analyze() method:
        - Runs on a worker thread, concurrently with the other layers
        - Reads shared state through snapshots only
        - Should not raise; the engine still catches and marks the layer degraded
        - Returns only JSON-serializable types in evidence
    """

    name: str = ""
    kinds: frozenset[EventKind] = frozenset(EventKind)
    enabled: bool = True
    fail_safe: bool = False

    def applies_to(self, event: SecurityEvent) -> bool:
        return event.kind in self.kinds

    @abstractmethod
    def analyze(self, event: SecurityEvent) -> DetectionResult:
        ...

    def __repr__(self) -> str:
        return f"<Layer:{self.name} enabled={self.enabled}>"
