"""
backend/models.py

Shared dataclasses for the ingestion stage of the pipeline.
Defining the event contract here lets the normalizer, the detection
layers and the processor be developed against one stable interface.

Detection/decision types (DetectionResult, Verdict, ...) live in
engine/models.py.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventKind(str, Enum):
    HTTP = "http"
    ACCESS = "access"
    NETWORK = "network"


class IndicatorType(str, Enum):
    """Indicator kinds shared by events and IOC records."""

    IP = "ip"
    DOMAIN = "domain"
    URL = "url"
    HASH = "hash"


# ---------------------------------------------------------------------------
# Normalizer output
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SecurityEvent:
    """
    One normalized unit of input. Created at ingestion, never mutated,
    discarded after the verdict is emitted.
    """

    event_id: str
    kind: EventKind
    timestamp: float
    """Wall-clock time at ingestion (Unix epoch)."""

    subject_key: str
    """Primary subject: 'ip:<addr>' or 'user:<id>|device:<id>'."""

    source_ip: str | None = None
    user_id: str | None = None
    device_id: str | None = None

    target: str = ""
    """URI for HTTP, resource for access requests, 'dst:port' for flows."""

    method: str = ""
    content: str = ""
    """Canonical content (URI + query + body + selected headers) for matchers."""

    user_agent: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    """Lower-cased header names."""

    payload_digest: str = ""
    """sha256 hex of the body ('' when there is none)."""

    payload_size: int = 0
    country: str | None = None
    """ISO country code when known (header or access context)."""

    context: dict[str, Any] = field(default_factory=dict)
    """Access-request context (geo/time/network/auth/device) or flow details."""

    indicators: tuple[tuple[IndicatorType, str], ...] = ()
    """Observables extracted for IOC lookup, in a stable order."""

    @property
    def path(self) -> str:
        """URI path without query string (HTTP only)."""
        return self.target.split("?", 1)[0]

    def __repr__(self) -> str:
        return (
            f"SecurityEvent({self.kind.value} {self.subject_key!r} "
            f"target={self.target!r} id={self.event_id[:8]})"
        )
