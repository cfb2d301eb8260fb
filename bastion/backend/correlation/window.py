"""
correlation/window.py

Per-subject sliding record of which detection layers triggered, and when.

Used for attack-chain correlation: two independent layers firing on the
same subject inside the window (e.g. a reputation hit followed minutes
later by a signature hit) is stronger evidence than either alone.

Thread safety: a single lock guards the subject map. Each operation is a
few deque appends/pops, so contention stays negligible next to layer work.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Iterable

logger = logging.getLogger(__name__)

_MAX_SUBJECTS = 100_000
_MAX_ENTRIES_PER_SUBJECT = 256


class CorrelationWindow:
    def __init__(self, window_seconds: float = 300.0) -> None:
        self.window_seconds = window_seconds
        self._hits: dict[str, deque[tuple[float, str]]] = {}
        self._lock = threading.Lock()

    def layers_within(
        self,
        subject: str,
        now: float | None = None,
        window_seconds: float | None = None,
    ) -> set[str]:
        """Distinct layers that triggered for *subject* inside the window."""
        now = time.time() if now is None else now
        horizon = now - (window_seconds or self.window_seconds)
        with self._lock:
            hits = self._hits.get(subject)
            if not hits:
                return set()
            return {layer for ts, layer in hits if ts >= horizon}

    def record(
        self,
        subject: str,
        layers: Iterable[str],
        now: float | None = None,
        window_seconds: float | None = None,
    ) -> None:
        layers = list(layers)
        if not layers:
            return
        now = time.time() if now is None else now
        horizon = now - (window_seconds or self.window_seconds)
        with self._lock:
            hits = self._hits.get(subject)
            if hits is None:
                if len(self._hits) >= _MAX_SUBJECTS:
                    self._purge_locked(now, horizon)
                hits = self._hits[subject] = deque(maxlen=_MAX_ENTRIES_PER_SUBJECT)
            while hits and hits[0][0] < horizon:
                hits.popleft()
            for layer in layers:
                hits.append((now, layer))

    def purge(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        with self._lock:
            return self._purge_locked(now, now - self.window_seconds)

    def _purge_locked(self, now: float, horizon: float) -> int:
        stale = [s for s, hits in self._hits.items() if not hits or hits[-1][0] < horizon]
        for subject in stale:
            del self._hits[subject]
        if stale:
            logger.debug("CorrelationWindow purged %d idle subject(s)", len(stale))
        return len(stale)

    def __len__(self) -> int:
        return len(self._hits)
