"""
decision/engine.py

Turns a RiskAssessment into a final decision.

State machine, one pass per event:

    RECEIVED ──► EVALUATING ──► DECIDED {allow | block | escalate | deny} ──► TERMINAL
        │                          ▲
        └── fast path ─────────────┘   (quarantined / rate-limited / geo-blocked
                                        subjects skip EVALUATING entirely)

Rules applied to a fully evaluated event, with the live PipelineConfig:

  - a fail-safe layer (zero-trust) that timed out or errored → DENY
  - zero-trust decision "deny"                               → DENY
  - score >= block_threshold, or a layer demanded a block    → BLOCK
  - score >= escalate_threshold (below block)                → ESCALATE
  - otherwise                                                → ALLOW

Independently of the action:
  - escalated   iff score >= escalate_threshold (alert emission)
  - quarantined iff the action blocks and score >= quarantine_threshold;
    the TTL scales with the score from 0.5x the base duration at the
    block threshold up to 4x at the quarantine threshold
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable

from ..config import PipelineConfig
from ..correlation.aggregator import RiskAssessment
from ..engine.models import Action

logger = logging.getLogger(__name__)

_MIN_TTL_FACTOR = 0.5
_MAX_TTL_FACTOR = 4.0


class DecisionState(str, Enum):
    RECEIVED   = "received"
    EVALUATING = "evaluating"
    DECIDED    = "decided"
    TERMINAL   = "terminal"


_TRANSITIONS: dict[DecisionState, frozenset[DecisionState]] = {
    DecisionState.RECEIVED:   frozenset({DecisionState.EVALUATING, DecisionState.DECIDED}),
    DecisionState.EVALUATING: frozenset({DecisionState.DECIDED}),
    DecisionState.DECIDED:    frozenset({DecisionState.TERMINAL}),
    DecisionState.TERMINAL:   frozenset(),
}


class EventLifecycle:
    """Tracks one event through the state machine; illegal moves raise."""

    __slots__ = ("state", "history")

    def __init__(self) -> None:
        self.state = DecisionState.RECEIVED
        self.history: list[DecisionState] = [DecisionState.RECEIVED]

    def advance(self, to: DecisionState) -> None:
        if to not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal transition {self.state.value} -> {to.value}")
        self.state = to
        self.history.append(to)


@dataclass(slots=True)
class Decision:
    action: Action
    status_code: int
    reason: str
    escalated: bool = False
    quarantined: bool = False
    quarantine_ttl_seconds: int | None = None


def quarantine_ttl_seconds(score: int, config: PipelineConfig) -> int:
    """
    Quarantine TTL for *score*: linear from 0.5x base at block_threshold to
    4x base at quarantine_threshold and above. With defaults: 30 min at 70,
    4 h at >= 90.
    """
    base = config.auto_block_duration_minutes * 60
    low, high = config.block_threshold, config.quarantine_threshold
    if score >= high:
        factor = _MAX_TTL_FACTOR
    elif score <= low or high == low:
        factor = _MIN_TTL_FACTOR
    else:
        span = (score - low) / (high - low)
        factor = _MIN_TTL_FACTOR + span * (_MAX_TTL_FACTOR - _MIN_TTL_FACTOR)
    return int(base * factor)


class DecisionEngine:
    def __init__(self, config: Callable[[], PipelineConfig]) -> None:
        self.config = config

    def decide(
        self,
        assessment: RiskAssessment,
        degraded_fail_safe: Iterable[str] = (),
    ) -> Decision:
        cfg = self.config()
        score = assessment.risk_score
        degraded_fail_safe = list(degraded_fail_safe)

        if degraded_fail_safe:
            action, status = Action.DENY, 403
            reason = f"fail-safe deny: verification unavailable ({', '.join(degraded_fail_safe)})"
        elif assessment.layer_decisions.get("zero_trust") == "deny":
            action, status = Action.DENY, 403
            reason = "zero-trust verification failed"
        elif score >= cfg.block_threshold:
            action, status = Action.BLOCK, 403
            reason = f"risk score {score} >= block threshold {cfg.block_threshold}"
        elif assessment.forced_block:
            action, status = Action.BLOCK, 403
            reason = "blocking rule matched"
        elif score >= cfg.escalate_threshold:
            action, status = Action.ESCALATE, 200
            reason = f"risk score {score} >= escalate threshold {cfg.escalate_threshold}"
        else:
            action, status = Action.ALLOW, 200
            reason = "no blocking signal"

        if assessment.matched_rules and action.blocks:
            reason += f"; rules={','.join(assessment.matched_rules)}"

        escalated = score >= cfg.escalate_threshold
        quarantined = action.blocks and score >= cfg.quarantine_threshold
        ttl = quarantine_ttl_seconds(score, cfg) if quarantined else None

        return Decision(
            action=action,
            status_code=status,
            reason=reason,
            escalated=escalated,
            quarantined=quarantined,
            quarantine_ttl_seconds=ttl,
        )
