"""
correlation/aggregator.py

Fuses the DetectionResults of one event into a single risk score and
classification.

  1. Sum every layer's contribution, capped at 100.
  2. Any layer reporting CRITICAL forces MALICIOUS, whatever the sum.
  3. Correlation bonus: when this event triggers at least one layer and
     the subject has >= 2 distinct triggered layers inside the sliding
     window (this event included), add the configured bonus.
  4. Classify the final score into benign / suspicious / malicious bands.

aggregate() is a pure function of (results, prior layers, config); the
RiskAggregator wrapper supplies the prior layers from the correlation
window and records this event's triggers afterwards.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

from ..config import PipelineConfig
from ..engine.models import Classification, DetectionResult, Severity, clamp_score
from ..models import SecurityEvent
from .window import CorrelationWindow

logger = logging.getLogger(__name__)

# Layers whose `matched` lists feed Verdict.matched_rules / matched_iocs
_RULE_LAYERS = frozenset({"signature"})
_IOC_LAYERS = frozenset({"reputation"})


@dataclass
class RiskAssessment:
    risk_score: int
    classification: Classification
    raw_score: int = 0
    correlation_bonus: int = 0
    critical: bool = False
    triggered_layers: list[str] = field(default_factory=list)
    correlated_layers: list[str] = field(default_factory=list)
    degraded_layers: list[str] = field(default_factory=list)
    matched_rules: list[str] = field(default_factory=list)
    matched_iocs: list[str] = field(default_factory=list)
    layer_decisions: dict[str, str] = field(default_factory=dict)
    layers: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def forced_block(self) -> bool:
        """A layer demanded a block regardless of the fused score."""
        return "block" in self.layer_decisions.values()


def classify(score: int, config: PipelineConfig) -> Classification:
    if score >= config.malicious_min_score:
        return Classification.MALICIOUS
    if score >= config.suspicious_min_score:
        return Classification.SUSPICIOUS
    return Classification.BENIGN


def aggregate(
    results: Iterable[DetectionResult],
    config: PipelineConfig,
    prior_layers: Iterable[str] = (),
) -> RiskAssessment:
    results = list(results)
    triggered = [r.layer for r in results if r.triggered and not r.degraded]

    raw = min(100, sum(max(0, r.score) for r in results if not r.degraded))
    critical = any(r.severity is Severity.CRITICAL for r in results if r.triggered)

    correlated = sorted(set(triggered) | set(prior_layers))
    bonus = config.correlation_bonus if triggered and len(correlated) >= 2 else 0
    score = clamp_score(raw + bonus)

    classification = classify(score, config)
    if critical:
        classification = Classification.MALICIOUS

    matched_rules: list[str] = []
    matched_iocs: list[str] = []
    for r in results:
        if r.layer in _RULE_LAYERS:
            matched_rules.extend(r.matched)
        elif r.layer in _IOC_LAYERS:
            matched_iocs.extend(r.matched)

    return RiskAssessment(
        risk_score=score,
        classification=classification,
        raw_score=raw,
        correlation_bonus=bonus,
        critical=critical,
        triggered_layers=triggered,
        correlated_layers=correlated if bonus else [],
        degraded_layers=[r.layer for r in results if r.degraded],
        matched_rules=matched_rules,
        matched_iocs=matched_iocs,
        layer_decisions={r.layer: r.decision for r in results if r.decision},
        layers={r.layer: r.to_dict() for r in results},
    )


class RiskAggregator:
    def __init__(self, window: CorrelationWindow | None = None) -> None:
        self.window = window or CorrelationWindow()

    def assess(
        self,
        event: SecurityEvent,
        results: Iterable[DetectionResult],
        config: PipelineConfig,
        now: float | None = None,
    ) -> RiskAssessment:
        now = time.time() if now is None else now
        window_seconds = config.correlation_window_seconds
        prior = self.window.layers_within(event.subject_key, now, window_seconds)
        assessment = aggregate(results, config, prior)
        self.window.record(event.subject_key, assessment.triggered_layers, now, window_seconds)
        if assessment.correlation_bonus:
            logger.info(
                "Attack-chain correlation for %s: layers=%s bonus=+%d",
                event.subject_key, assessment.correlated_layers, assessment.correlation_bonus,
            )
        return assessment
