"""
backend/errors.py

Error taxonomy for the Bastion pipeline.

Only configuration-time errors are fatal. Everything raised on the
per-event path is recovered inside the processor and folded into the
Verdict (degraded / evidence / fail-safe block), so callers always get a
structured decision instead of an exception.
"""

from __future__ import annotations


class BastionError(Exception):
    """Base class for every error raised by this package."""


# ---------------------------------------------------------------------------
# Per-event errors
# ---------------------------------------------------------------------------

class EventValidationError(BastionError):
    """
    An inbound event is malformed or incomplete.

    Fail-safe default: the processor turns this into a Block verdict.
    `status_code` is the HTTP status used for the structured block response.
    """

    status_code: int = 400

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class MalformedEventError(EventValidationError):
    """Required fields (source identity) are missing or unparseable."""

    status_code = 400


class OversizedEventError(EventValidationError):
    """Request body exceeds MAX_BODY_BYTES."""

    status_code = 413


class LayerTimeout(BastionError):
    """A detection layer did not finish before the per-event deadline."""

    def __init__(self, layer: str, deadline_ms: float) -> None:
        super().__init__(f"layer {layer!r} exceeded {deadline_ms:.0f}ms deadline")
        self.layer = layer
        self.deadline_ms = deadline_ms


# ---------------------------------------------------------------------------
# Background / load-time errors
# ---------------------------------------------------------------------------

class ExternalFeedError(BastionError):
    """A threat-intel feed call failed. Never propagated to the event path."""

    def __init__(self, feed: str, message: str, status_code: int | None = None) -> None:
        super().__init__(f"{feed}: {message}")
        self.feed = feed
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        # 4xx other than 429 will not get better by asking again
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class IntegrityError(BastionError):
    """A persisted rule/IOC record failed its checksum."""

    def __init__(self, record_id: str, message: str = "checksum mismatch") -> None:
        super().__init__(f"record {record_id!r}: {message}")
        self.record_id = record_id


class ConfigurationError(BastionError):
    """Invalid threshold or rule syntax. Fatal at startup."""
