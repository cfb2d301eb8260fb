"""
decision/alerts.py

Operational alert fan-out: log line, optional persistent sink, and the
"alerts" WebSocket channel (via pipeline.alert_queue).

emit() may be called from the event loop (processor, async routes) or
from a worker thread (sync routes, rule reload). Queue puts are always
marshalled onto the bound loop because asyncio.Queue is not thread-safe.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from collections import OrderedDict, deque
from typing import Any, Callable

from .. import pipeline
from ..engine.models import Verdict, severity_for_score
from ..errors import IntegrityError

logger = logging.getLogger(__name__)

_DEDUPE_CAPACITY = 10_000


class AlertDispatcher:
    def __init__(self, sink: Callable[[dict], Any] | None = None) -> None:
        self.sink = sink
        self.recent: deque[dict] = deque(maxlen=100)
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def emit(
        self,
        kind: str,
        severity: str,
        message: str,
        subject_key: str | None = None,
        event_id: str | None = None,
        details: dict[str, Any] | None = None,
        dedupe_key: str | None = None,
    ) -> dict | None:
        """Publish one alert. Returns None if *dedupe_key* was already emitted."""
        if dedupe_key is not None:
            with self._lock:
                if dedupe_key in self._seen:
                    return None
                self._seen[dedupe_key] = None
                if len(self._seen) > _DEDUPE_CAPACITY:
                    self._seen.popitem(last=False)

        alert = {
            "alert_id": str(uuid.uuid4()),
            "timestamp": time.time(),
            "kind": kind,
            "severity": severity,
            "subject_key": subject_key,
            "event_id": event_id,
            "message": message,
            "details": details or {},
        }
        logger.warning("ALERT [%s] %s: %s (subject=%s)", severity, kind, message, subject_key)
        self.recent.append(alert)

        if self.sink is not None:
            self.sink(alert)
        self._enqueue(alert)
        return alert

    def _enqueue(self, alert: dict) -> None:
        queue = pipeline.alert_queue
        if queue is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if self._loop is not None and running is not self._loop:
            self._loop.call_soon_threadsafe(pipeline.safe_put_nowait, queue, alert)
        else:
            pipeline.safe_put_nowait(queue, alert)

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------

    def escalation(self, verdict: Verdict) -> dict | None:
        sev = severity_for_score(verdict.risk_score)
        return self.emit(
            kind="escalation",
            severity=sev.value if sev else "low",
            message=f"{verdict.action.value} {verdict.subject_key} at risk {verdict.risk_score}",
            subject_key=verdict.subject_key,
            event_id=verdict.event_id,
            details={
                "action": verdict.action.value,
                "risk_score": verdict.risk_score,
                "classification": verdict.classification.value,
                "matched_rules": list(verdict.matched_rules),
                "matched_iocs": list(verdict.matched_iocs),
                "quarantined": verdict.quarantined,
            },
            dedupe_key=f"escalation:{verdict.event_id}",
        )

    def integrity(self, record_id: str, exc: IntegrityError) -> dict | None:
        return self.emit(
            kind="integrity",
            severity="high",
            message=str(exc),
            details={"record_id": record_id},
        )
