"""
decision/response.py

Applies a finalized Verdict's side effects and builds the HTTP response
plan for HTTP-path integrations.

Side effects, all idempotent for the same Verdict:
  - quarantined verdict → QuarantineStore.quarantine(), which only ever
    extends an existing entry
  - escalated verdict   → one alert, deduplicated by event id

Response plan:
  - Allow / Escalate → pass through, with security headers attached
  - Block / Deny     → structured error {error, code, timestamp}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..engine.models import Verdict
from ..storage.quarantine_store import QuarantineStore
from .alerts import AlertDispatcher

logger = logging.getLogger(__name__)

SECURITY_HEADERS: dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Content-Security-Policy": (
        "default-src 'self'; script-src 'self'; style-src 'self' 'unsafe-inline'; "
        "img-src 'self' data:; frame-ancestors 'none'"
    ),
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
    "Cache-Control": "no-store",
}

ERROR_MESSAGES: dict[int, str] = {
    400: "Malformed request",
    403: "Access denied",
    413: "Request entity too large",
    429: "Too many requests",
}


@dataclass(slots=True)
class ResponsePlan:
    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    body: dict[str, Any] | None = None

    @property
    def allowed(self) -> bool:
        return self.body is None


def block_body(verdict: Verdict) -> dict[str, Any]:
    return {
        "error": ERROR_MESSAGES.get(verdict.status_code, "Request blocked"),
        "code": verdict.status_code,
        "timestamp": datetime.fromtimestamp(verdict.timestamp, tz=timezone.utc).isoformat(),
    }


class ResponseExecutor:
    def __init__(
        self,
        quarantine_store: QuarantineStore,
        alerts: AlertDispatcher | None = None,
        security_headers: dict[str, str] | None = None,
    ) -> None:
        self.quarantine_store = quarantine_store
        self.alerts = alerts
        self.security_headers = dict(SECURITY_HEADERS if security_headers is None else security_headers)

    def apply(self, verdict: Verdict) -> ResponsePlan:
        if verdict.quarantined and verdict.quarantine_ttl_seconds:
            self.quarantine_store.quarantine(
                verdict.subject_key,
                reason=verdict.reason,
                risk_score=verdict.risk_score,
                ttl_seconds=verdict.quarantine_ttl_seconds,
                auto=True,
                now=verdict.timestamp,
            )
        if verdict.escalated and self.alerts is not None:
            self.alerts.escalation(verdict)
        return self.plan(verdict)

    def plan(self, verdict: Verdict) -> ResponsePlan:
        if verdict.action.blocks:
            headers = {"Cache-Control": "no-store"}
            if verdict.status_code == 429:
                headers["Retry-After"] = "60"
            return ResponsePlan(verdict.status_code, headers, block_body(verdict))
        return ResponsePlan(200, dict(self.security_headers))
