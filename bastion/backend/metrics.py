"""
backend/metrics.py

Lightweight thread-safe counters for the security pipeline.
No external dependencies — uses Python's threading.Lock.

Detection layers run on worker threads, so every counter they touch
must be safe to increment concurrently.

Usage:
    from backend.metrics import METRICS
    METRICS.events_received.inc()
    print(METRICS.as_dict())
"""

import threading


class Counter:
    """A thread-safe integer counter."""

    __slots__ = ("_value", "_lock")

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def inc(self, amount: int = 1) -> None:
        with self._lock:
            self._value += amount

    def reset(self) -> None:
        with self._lock:
            self._value = 0

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def __repr__(self) -> str:  # pragma: no cover
        return f"Counter({self._value})"


class Metrics:
    """Singleton holding all pipeline counters."""

    def __init__(self) -> None:
        # --- Ingestion ---
        self.events_received: Counter = Counter()
        """Raw descriptors handed to the processor."""

        self.events_malformed: Counter = Counter()
        """Descriptors rejected by the normalizer (fail-safe block)."""

        self.events_dropped: Counter = Counter()
        """Events dropped because the ingest queue was full."""

        # --- Decisions ---
        self.verdicts_allow: Counter = Counter()
        self.verdicts_block: Counter = Counter()
        self.verdicts_quarantine: Counter = Counter()
        self.verdicts_escalate: Counter = Counter()
        self.verdicts_deny: Counter = Counter()

        self.fast_path_blocks: Counter = Counter()
        """Blocks decided from the quarantine store without running layers."""

        self.rate_limited: Counter = Counter()

        # --- Degradation ---
        self.layer_timeouts: Counter = Counter()
        self.layer_errors: Counter = Counter()
        self.events_incomplete: Counter = Counter()
        self.audit_failures: Counter = Counter()

        # --- Threat intel / integrity ---
        self.feed_calls: Counter = Counter()
        self.feed_errors: Counter = Counter()
        self.integrity_rejections: Counter = Counter()

    def as_dict(self) -> dict:
        """Return all counters as a plain dict (safe for JSON serialisation)."""
        return {
            name: attr.value
            for name, attr in vars(self).items()
            if isinstance(attr, Counter)
        }

    def reset_all(self) -> None:
        """Reset every counter to zero (useful in tests)."""
        for attr in vars(self).values():
            if isinstance(attr, Counter):
                attr.reset()


# Module-level singleton: import from here everywhere
METRICS = Metrics()
