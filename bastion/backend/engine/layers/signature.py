"""
engine/layers/signature.py

Signature matcher: canonical content (and user-agent, for bot rules)
against the enabled rules of the current RuleSet snapshot.

Categories are evaluated independently and in a fixed order; inside a
category the first matching rule wins. Each match contributes its
severity score; the layer score is the capped sum. Identical event +
identical RuleSet always yields identical matches.
"""

from __future__ import annotations

import logging
from typing import Any

from ...models import EventKind, SecurityEvent
from ...storage.rule_store import RuleAction, RuleCategory, RuleSet, RuleStore
from ..models import DetectionResult, Severity, clamp_score
from .base import BaseLayer

logger = logging.getLogger(__name__)

_SEVERITY_ORDER = (Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL)


def match_rules(ruleset: RuleSet, content: str, user_agent: str) -> list[dict]:
    """Return one match record per category, in category order."""
    matches: list[dict] = []
    for category in RuleCategory:
        for rule in ruleset.by_category.get(category, ()):
            pattern = rule.match(content, user_agent)
            if pattern is None:
                continue
            matches.append({
                "rule": rule.id,
                "category": category.value,
                "severity": rule.severity.value,
                "action": rule.action.value,
                "pattern": pattern,
            })
            break
    return matches


class SignatureLayer(BaseLayer):
    name = "signature"
    kinds = frozenset({EventKind.HTTP})

    def __init__(self, rule_store: RuleStore) -> None:
        self.rule_store = rule_store

    def applies_to(self, event: SecurityEvent) -> bool:
        return event.kind in self.kinds or bool(event.content or event.user_agent)

    def analyze(self, event: SecurityEvent) -> DetectionResult:
        ruleset = self.rule_store.snapshot()
        matches = match_rules(ruleset, event.content, event.user_agent)
        if not matches:
            return DetectionResult.clean(self.name, rule_set_version=ruleset.version)

        severities = [Severity(m["severity"]) for m in matches]
        severity = max(severities, key=_SEVERITY_ORDER.index)
        score = clamp_score(sum(s.score for s in severities))
        blocking = any(m["action"] == RuleAction.BLOCK.value for m in matches)

        logger.debug(
            "Signature hit on %s: %s", event.subject_key, [m["rule"] for m in matches],
        )
        return DetectionResult(
            layer=self.name,
            triggered=True,
            score=score,
            severity=severity,
            matched=[m["rule"] for m in matches],
            decision="block" if blocking else None,
            evidence={"rule_set_version": ruleset.version, "matches": matches},
        )


# ---------------------------------------------------------------------------
# Dry run
# ---------------------------------------------------------------------------

def dry_run(ruleset: RuleSet, cases: list[tuple[SecurityEvent, bool]]) -> dict[str, Any]:
    """
    Evaluate labelled events against *ruleset* without touching any state.

    Each case is (event, expected_block). A case is "blocked" when a rule
    with action=block matches. Reports per-case results plus accuracy,
    false positives and false negatives.
    """
    results = []
    false_pos = false_neg = 0
    for event, expected in cases:
        matches = match_rules(ruleset, event.content, event.user_agent)
        blocked = any(m["action"] == RuleAction.BLOCK.value for m in matches)
        if blocked and not expected:
            false_pos += 1
        elif expected and not blocked:
            false_neg += 1
        results.append({
            "target": event.target,
            "expected_block": expected,
            "blocked": blocked,
            "correct": blocked == expected,
            "matched": [m["rule"] for m in matches],
        })
    total = len(results)
    correct = sum(1 for r in results if r["correct"])
    return {
        "rule_set_version": ruleset.version,
        "total": total,
        "accuracy": round(correct / total, 4) if total else None,
        "false_positives": false_pos,
        "false_negatives": false_neg,
        "results": results,
    }
