"""
engine/layers/reputation.py

Reputation & threat-intel lookup against the local IOC cache.

Never calls a feed: the cache is refreshed in the background by
intel/refresher.py. The layer score is the strongest matching IOC's
threat score (confidence x source priority). A subject whose running
trust has fallen very low picks up a small penalty on top.
"""

from __future__ import annotations

import logging

from ...models import SecurityEvent
from ...storage.ioc_store import IOCCache
from ...storage.trust_store import TrustStore
from ..models import DetectionResult, clamp_score, severity_for_score
from .base import BaseLayer

logger = logging.getLogger(__name__)


class ReputationLayer(BaseLayer):
    name = "reputation"

    def __init__(
        self,
        ioc_cache: IOCCache,
        trust_store: TrustStore | None = None,
        low_trust_threshold: float = 20.0,
        low_trust_penalty: int = 10,
    ) -> None:
        self.ioc_cache = ioc_cache
        self.trust_store = trust_store
        self.low_trust_threshold = low_trust_threshold
        self.low_trust_penalty = low_trust_penalty

    def applies_to(self, event: SecurityEvent) -> bool:
        return bool(event.indicators) or self.trust_store is not None

    def analyze(self, event: SecurityEvent) -> DetectionResult:
        hits = self.ioc_cache.lookup_many(event.indicators, now=event.timestamp)

        score = max((ioc.threat_score for _, ioc in hits), default=0)
        matched = [f"{ioc.type.value}:{ioc.value}" for _, ioc in hits]
        evidence: dict = {
            "iocs": [
                {
                    "observed": observed,
                    "ioc": f"{ioc.type.value}:{ioc.value}",
                    "confidence": ioc.confidence,
                    "source": ioc.source,
                    "priority": ioc.priority,
                    "threat_type": ioc.threat_type,
                    "score": ioc.threat_score,
                }
                for observed, ioc in hits
            ],
        }

        if self.trust_store is not None:
            profile = self.trust_store.get(event.subject_key, now=event.timestamp)
            if profile is not None and profile.trust_score < self.low_trust_threshold:
                score += self.low_trust_penalty
                evidence["low_trust"] = round(profile.trust_score, 2)

        score = clamp_score(score)
        if score == 0:
            return DetectionResult(layer=self.name, evidence=evidence)

        if hits:
            logger.info("IOC match for %s: %s", event.subject_key, matched)
        return DetectionResult(
            layer=self.name,
            triggered=True,
            score=score,
            severity=severity_for_score(score),
            matched=matched,
            evidence=evidence,
        )
