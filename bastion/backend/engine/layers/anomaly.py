"""
engine/layers/anomaly.py

Behavioral layer: scores the event against the subject's rolling
baseline, then folds the event into that baseline.

Scoring reads a deep-copied snapshot from the TrustStore, so it never
holds the subject lock while the scorer runs. The baseline update is
applied through TrustStore.update() and is therefore serialized per
subject.
"""

from __future__ import annotations

import logging

from ...models import SecurityEvent
from ...storage.trust_store import BehaviorBaseline, TrustProfile, TrustStore
from ..models import DetectionResult, clamp_score, severity_for_score
from ..scoring import AnomalyScorer, EWMAScorer
from .base import BaseLayer

logger = logging.getLogger(__name__)


class AnomalyLayer(BaseLayer):
    name = "anomaly"

    def __init__(
        self,
        trust_store: TrustStore,
        scorer: AnomalyScorer | None = None,
        min_score: int = 1,
    ) -> None:
        self.trust_store = trust_store
        self.scorer = scorer or EWMAScorer()
        self.min_score = min_score

    def analyze(self, event: SecurityEvent) -> DetectionResult:
        profile = self.trust_store.get(event.subject_key, now=event.timestamp)
        baseline = profile.baseline if profile is not None else BehaviorBaseline()

        score, reasons = self.scorer.score(event, baseline)
        score = clamp_score(score)

        def fold(p: TrustProfile) -> None:
            self.scorer.update(event, p.baseline)

        self.trust_store.update(event.subject_key, fold, now=event.timestamp)

        evidence = {
            "anomalies": list(reasons),
            "observations": baseline.observations,
        }
        if score < self.min_score:
            return DetectionResult(layer=self.name, evidence=evidence)

        logger.debug("Anomalies for %s: %s (score=%d)", event.subject_key, reasons, score)
        return DetectionResult(
            layer=self.name,
            triggered=True,
            score=score,
            severity=severity_for_score(score),
            matched=list(reasons),
            evidence=evidence,
        )
