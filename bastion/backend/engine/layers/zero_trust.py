"""
engine/layers/zero_trust.py

Zero-Trust verifier for access-request events.

Six ordered sub-checks each return a trust contribution:

  identity          0..25   authentication strength, failed attempts
  device            0..20   managed / encrypted / patched / previously seen
  context           0..15   geo policy, business hours, network origin
  behavior          0..20   verification history of this subject
  policy            0..20   resource → required role match
  risk_adjustment -10..+10  running trust of the subject

Every check runs, even after an earlier one scored low, so the audit
evidence always carries the full breakdown. A check that raises scores
zero and records the error; it never stops the others.

trust = clamp(sum, 0, 100); allow iff trust >= trust_threshold.
A deny contributes (100 - trust) to the fused risk score.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Protocol

from ...config import PipelineConfig
from ...ingest.client_ip import Network, in_networks
from ...models import EventKind, SecurityEvent
from ...storage.trust_store import TrustProfile, TrustStore
from ..models import DetectionResult, clamp_score, severity_for_score
from .base import BaseLayer

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TrustFactor:
    name: str
    score: float
    max_score: float
    details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d = {
            "name": self.name,
            "score": round(self.score, 2),
            "max_score": self.max_score,
            "details": self.details,
        }
        if self.error:
            d["error"] = self.error
        return d


class TrustCheck(Protocol):
    name: str
    max_score: float

    def evaluate(self, event: SecurityEvent, profile: TrustProfile | None) -> TrustFactor:
        ...


def _bounded(check: TrustCheck, value: float, **details: Any) -> TrustFactor:
    return TrustFactor(check.name, max(0.0, min(check.max_score, value)), check.max_score, details)


# ---------------------------------------------------------------------------
# Built-in checks
# ---------------------------------------------------------------------------

class IdentityCheck:
    name = "identity"
    max_score = 25.0

    METHOD_SCORES: dict[str, float] = {
        "mfa": 25.0,
        "certificate": 25.0,
        "sso": 20.0,
        "password": 12.0,
    }

    def evaluate(self, event: SecurityEvent, profile: TrustProfile | None) -> TrustFactor:
        auth: Mapping[str, Any] = event.context.get("auth") or {}
        method = str(auth.get("method", "")).lower()
        if auth.get("mfa") is True and method != "certificate":
            method = "mfa"
        score = self.METHOD_SCORES.get(method, 0.0)
        if auth.get("verified") is False:
            score = 0.0

        failed = int(auth.get("failed_attempts", 0) or 0)
        if failed > 3:
            score -= 10.0
        elif failed > 0:
            score -= 2.0 * failed

        return _bounded(self, score, method=method or None, failed_attempts=failed)


class DeviceCheck:
    name = "device"
    max_score = 20.0

    def evaluate(self, event: SecurityEvent, profile: TrustProfile | None) -> TrustFactor:
        device: Mapping[str, Any] = event.context.get("device") or {}
        score = 0.0
        posture = {}
        for flag, weight in (("managed", 6.0), ("encrypted", 4.0), ("patched", 4.0)):
            ok = bool(device.get(flag))
            posture[flag] = ok
            if ok:
                score += weight
        known = profile is not None and profile.verifications > 0
        if known:
            score += 6.0
        if device.get("jailbroken") or device.get("rooted"):
            score = 0.0
            posture["compromised"] = True
        return _bounded(self, score, known_device=known, **posture)


class ContextCheck:
    name = "context"
    max_score = 15.0

    def __init__(
        self,
        geo_allow: Iterable[str] = (),
        geo_deny: Iterable[str] = (),
        trusted_networks: Iterable[Network] = (),
        business_hours: tuple[int, int] = (7, 20),
    ) -> None:
        self.geo_allow = frozenset(c.upper() for c in geo_allow)
        self.geo_deny = frozenset(c.upper() for c in geo_deny)
        self.trusted_networks = tuple(trusted_networks)
        self.business_hours = business_hours

    def _geo(self, country: str | None) -> tuple[float, str]:
        if country and country in self.geo_deny:
            return 0.0, "denied"
        if self.geo_allow:
            return (5.0, "allowed") if country in self.geo_allow else (0.0, "not-allowed")
        return (5.0, "unrestricted") if country else (2.0, "unknown")

    def _network(self, ip: str | None) -> tuple[float, str]:
        if not ip:
            return 0.0, "unknown"
        if in_networks(ip, self.trusted_networks):
            return 5.0, "trusted"
        if ipaddress.ip_address(ip).is_private:
            return 3.0, "private"
        return 0.0, "public"

    def evaluate(self, event: SecurityEvent, profile: TrustProfile | None) -> TrustFactor:
        geo_score, geo = self._geo(event.country)
        hour = event.context.get("hour")
        start, end = self.business_hours
        in_hours = isinstance(hour, int) and start <= hour < end
        time_score = 5.0 if in_hours else 0.0
        net_score, network = self._network(event.source_ip)
        return _bounded(
            self, geo_score + time_score + net_score,
            geo=geo, hour=hour, business_hours=in_hours, network=network,
        )


class BehaviorCheck:
    name = "behavior"
    max_score = 20.0

    def evaluate(self, event: SecurityEvent, profile: TrustProfile | None) -> TrustFactor:
        if profile is None or profile.verifications == 0:
            return _bounded(self, 10.0, history="none")
        denial_ratio = profile.denials / profile.verifications
        score = 20.0 * (1.0 - denial_ratio)
        countries = profile.baseline.countries
        new_geo = bool(event.country and countries and event.country not in countries)
        if new_geo:
            score -= 5.0
        return _bounded(
            self, score,
            verifications=profile.verifications,
            denial_ratio=round(denial_ratio, 3),
            new_geo=new_geo,
        )


class PolicyCheck:
    name = "policy"
    max_score = 20.0

    DEFAULT_POLICIES: dict[str, frozenset[str]] = {
        "/admin": frozenset({"admin"}),
        "/finance": frozenset({"admin", "finance"}),
        "/hr": frozenset({"admin", "hr"}),
    }

    def __init__(self, policies: Mapping[str, Iterable[str]] | None = None) -> None:
        source = self.DEFAULT_POLICIES if policies is None else policies
        # Longest prefix first so /admin/users beats /admin
        self.policies = sorted(
            ((prefix, frozenset(roles)) for prefix, roles in source.items()),
            key=lambda item: len(item[0]),
            reverse=True,
        )

    def evaluate(self, event: SecurityEvent, profile: TrustProfile | None) -> TrustFactor:
        resource = event.target or ""
        roles = frozenset(str(r).lower() for r in (event.context.get("auth") or {}).get("roles", []))
        for prefix, required in self.policies:
            if resource == prefix or resource.startswith(prefix.rstrip("/") + "/"):
                granted = bool(roles & required)
                return _bounded(
                    self, 20.0 if granted else 0.0,
                    policy=prefix, required_roles=sorted(required), granted=granted,
                )
        return _bounded(self, 20.0, policy=None, granted=True)


class RiskAdjustmentCheck:
    name = "risk_adjustment"
    max_score = 10.0

    def evaluate(self, event: SecurityEvent, profile: TrustProfile | None) -> TrustFactor:
        if profile is None:
            return TrustFactor(self.name, 0.0, self.max_score, {"running_trust": None})
        adjustment = max(-10.0, min(10.0, (profile.trust_score - 50.0) / 5.0))
        return TrustFactor(
            self.name, adjustment, self.max_score,
            {"running_trust": round(profile.trust_score, 2)},
        )


def default_checks(
    geo_allow: Iterable[str] = (),
    geo_deny: Iterable[str] = (),
    trusted_networks: Iterable[Network] = (),
    business_hours: tuple[int, int] = (7, 20),
) -> list[TrustCheck]:
    return [
        IdentityCheck(),
        DeviceCheck(),
        ContextCheck(geo_allow, geo_deny, trusted_networks, business_hours),
        BehaviorCheck(),
        PolicyCheck(),
        RiskAdjustmentCheck(),
    ]


# ---------------------------------------------------------------------------
# Layer
# ---------------------------------------------------------------------------

class ZeroTrustLayer(BaseLayer):
    name = "zero_trust"
    kinds = frozenset({EventKind.ACCESS})
    fail_safe = True

    def __init__(
        self,
        trust_store: TrustStore,
        config: Callable[[], PipelineConfig],
        checks: list[TrustCheck] | None = None,
    ) -> None:
        self.trust_store = trust_store
        self.config = config
        self.checks: list[TrustCheck] = checks if checks is not None else default_checks()

    def verify(self, event: SecurityEvent) -> tuple[float, list[TrustFactor]]:
        profile = self.trust_store.get(event.subject_key, now=event.timestamp)
        factors: list[TrustFactor] = []
        for check in self.checks:
            try:
                factors.append(check.evaluate(event, profile))
            except Exception as exc:
                logger.exception("Trust check %r failed", check.name)
                factors.append(TrustFactor(
                    check.name, 0.0, check.max_score, error=f"{type(exc).__name__}: {exc}",
                ))
        trust = max(0.0, min(100.0, sum(f.score for f in factors)))
        return trust, factors

    def analyze(self, event: SecurityEvent) -> DetectionResult:
        threshold = self.config().trust_threshold
        trust, factors = self.verify(event)
        allowed = trust >= threshold

        self.trust_store.record_verification(
            event.subject_key,
            trust,
            {f.name: round(f.score, 2) for f in factors},
            allowed,
            now=event.timestamp,
        )

        contribution = 0 if allowed else clamp_score(100 - trust)
        evidence = {
            "trust_score": round(trust, 2),
            "trust_threshold": threshold,
            "factors": [f.to_dict() for f in factors],
        }
        if not allowed:
            logger.info(
                "Zero-trust deny for %s (trust=%.1f < %d)", event.subject_key, trust, threshold,
            )
        return DetectionResult(
            layer=self.name,
            triggered=not allowed,
            score=contribution,
            severity=severity_for_score(contribution) if not allowed else None,
            decision="allow" if allowed else "deny",
            evidence=evidence,
        )
