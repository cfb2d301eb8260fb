"""
engine/models.py

Data models for the detection and decision stages.

Severity        — 4-level enum used by rules and layer results
DetectionResult — returned by every layer's analyze() method
Classification  — benign / suspicious / malicious
Action          — final verdict action
Verdict         — exactly one per SecurityEvent, emitted to the audit sink
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import LayerTimeout


# ---------------------------------------------------------------------------
# Severity
# ---------------------------------------------------------------------------

class Severity(str, Enum):
    LOW      = "low"
    MEDIUM   = "medium"
    HIGH     = "high"
    CRITICAL = "critical"

    @property
    def score(self) -> int:
        return SEVERITY_SCORES[self]


SEVERITY_SCORES: dict[Severity, int] = {
    Severity.CRITICAL: 90,
    Severity.HIGH:     70,
    Severity.MEDIUM:   50,
    Severity.LOW:      30,
}


def severity_for_score(score: float) -> Severity | None:
    """Inverse of SEVERITY_SCORES: the highest severity whose score <= *score*."""
    for sev in (Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW):
        if score >= SEVERITY_SCORES[sev]:
            return sev
    return None


class Classification(str, Enum):
    BENIGN     = "benign"
    SUSPICIOUS = "suspicious"
    MALICIOUS  = "malicious"


class Action(str, Enum):
    ALLOW      = "allow"
    BLOCK      = "block"
    ESCALATE   = "escalate"
    DENY       = "deny"

    @property
    def blocks(self) -> bool:
        return self in (Action.BLOCK, Action.DENY)


# ---------------------------------------------------------------------------
# DetectionResult: one layer's verdict on one event
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class DetectionResult:
    """
    Return value of BaseLayer.analyze().

    Layers must NEVER raise — the engine still guards against it, but a
    layer that raises is reported as degraded.
    Evidence must contain only JSON-serializable types.
    """

    layer: str
    triggered: bool = False
    score: int = 0
    """Contribution to the fused risk score, 0 … 100."""

    severity: Severity | None = None
    evidence: dict[str, Any] = field(default_factory=dict)
    matched: list[str] = field(default_factory=list)
    """Rule ids or IOC values responsible for the trigger."""

    decision: str | None = None
    """Layer-level allow/deny (zero-trust only)."""

    timed_out: bool = False
    error: str | None = None
    elapsed_ms: float = 0.0

    @property
    def degraded(self) -> bool:
        return self.timed_out or self.error is not None

    @classmethod
    def clean(cls, layer: str, **evidence: Any) -> "DetectionResult":
        return cls(layer=layer, evidence=dict(evidence))

    @classmethod
    def timeout(cls, layer: str, deadline_ms: float) -> "DetectionResult":
        return cls(
            layer=layer,
            timed_out=True,
            error=str(LayerTimeout(layer, deadline_ms)),
            evidence={"degraded": "timeout"},
        )

    @classmethod
    def failure(cls, layer: str, exc: BaseException) -> "DetectionResult":
        return cls(
            layer=layer,
            error=f"{type(exc).__name__}: {exc}",
            evidence={"degraded": "error"},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "layer": self.layer,
            "triggered": self.triggered,
            "score": self.score,
            "severity": self.severity.value if self.severity else None,
            "evidence": self.evidence,
            "matched": list(self.matched),
            "decision": self.decision,
            "timed_out": self.timed_out,
            "error": self.error,
            "elapsed_ms": round(self.elapsed_ms, 3),
        }

    def __repr__(self) -> str:
        return (
            f"DetectionResult({self.layer!r} triggered={self.triggered} "
            f"score={self.score} degraded={self.degraded})"
        )


# ---------------------------------------------------------------------------
# Verdict: final decision for one event
# ---------------------------------------------------------------------------

@dataclass
class Verdict:
    """Final decision. Produced once per event, emitted to the audit sink."""

    event_id: str
    subject_key: str
    kind: str
    risk_score: int = 0
    classification: Classification = Classification.BENIGN
    action: Action = Action.ALLOW
    escalated: bool = False
    """Alert emitted (score >= escalate threshold), independent of action."""

    quarantined: bool = False
    """Subject quarantined as a side effect of this verdict (score >= quarantine threshold)."""

    reason: str = ""
    status_code: int = 200
    """HTTP status for the structured block response (200 on allow)."""

    matched_rules: list[str] = field(default_factory=list)
    matched_iocs: list[str] = field(default_factory=list)
    layers: dict[str, dict[str, Any]] = field(default_factory=dict)
    """Per-layer breakdown (DetectionResult.to_dict())."""

    correlation_bonus: int = 0
    trust_score: int | None = None
    fast_path: bool = False
    degraded: bool = False
    degraded_layers: list[str] = field(default_factory=list)
    incomplete: bool = False
    quarantine_ttl_seconds: int | None = None
    source_ip: str | None = None
    timestamp: float = field(default_factory=time.time)
    latency_ms: float = 0.0

    def __post_init__(self) -> None:
        self.risk_score = clamp_score(self.risk_score)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "subject_key": self.subject_key,
            "kind": self.kind,
            "risk_score": self.risk_score,
            "classification": self.classification.value,
            "action": self.action.value,
            "escalated": self.escalated,
            "quarantined": self.quarantined,
            "reason": self.reason,
            "status_code": self.status_code,
            "matched_rules": list(self.matched_rules),
            "matched_iocs": list(self.matched_iocs),
            "layers": self.layers,
            "correlation_bonus": self.correlation_bonus,
            "trust_score": self.trust_score,
            "fast_path": self.fast_path,
            "degraded": self.degraded,
            "degraded_layers": list(self.degraded_layers),
            "incomplete": self.incomplete,
            "quarantine_ttl_seconds": self.quarantine_ttl_seconds,
            "source_ip": self.source_ip,
            "timestamp": self.timestamp,
            "latency_ms": round(self.latency_ms, 3),
        }

    def __repr__(self) -> str:
        return (
            f"Verdict({self.action.value} score={self.risk_score} "
            f"{self.classification.value} subject={self.subject_key!r})"
        )


def clamp_score(value: float) -> int:
    """Round and clamp any score into [0, 100]."""
    return int(max(0, min(100, round(value))))
