"""
tests/test_layers.py

Tests for the four detection layers and the rule dry run. Layers are
called directly (analyze() is synchronous); no engine or event loop.
"""

from __future__ import annotations

from bastion.backend.config import LiveConfig
from bastion.backend.engine.layers import AnomalyLayer, ReputationLayer, SignatureLayer, ZeroTrustLayer
from bastion.backend.engine.layers.signature import dry_run
from bastion.backend.engine.layers.zero_trust import (
    ContextCheck,
    IdentityCheck,
    PolicyCheck,
    TrustFactor,
    default_checks,
)
from bastion.backend.engine.models import Severity
from bastion.backend.ingest import Normalizer, parse_networks
from bastion.backend.intel.models import IOC
from bastion.backend.models import EventKind, IndicatorType, SecurityEvent
from bastion.backend.storage.ioc_store import IOCCache
from bastion.backend.storage.rule_store import RuleStore
from bastion.backend.storage.trust_store import TrustStore

normalizer = Normalizer()


def http_event(uri: str = "/", user_agent: str = "Mozilla/5.0", ip: str = "203.0.113.9", **extra):
    return normalizer.normalize({"ip": ip, "uri": uri, "user_agent": user_agent, **extra}, "http")


def access_event(resource: str = "/reports", auth: dict | None = None, **context):
    ctx = {
        "geo": "US",
        "time": 10,
        "network": "10.0.0.5",
        "auth": auth if auth is not None else {"method": "password", "failed_attempts": 2},
        "device": {"managed": True, "encrypted": True, "patched": True},
    }
    ctx.update(context)
    return normalizer.normalize(
        {"user_id": "u1", "device_id": "d1", "resource": resource, "context": ctx}, "access",
    )


def rule_store() -> RuleStore:
    store = RuleStore()
    store.load()
    return store


# ---------------------------------------------------------------------------
# Signature
# ---------------------------------------------------------------------------

class TestSignatureLayer:

    def test_sql_injection_is_critical_block(self):
        result = SignatureLayer(rule_store()).analyze(http_event("/search?q=' OR 1=1"))
        assert result.triggered
        assert result.matched == ["sql_injection"]
        assert result.score == 90
        assert result.severity is Severity.CRITICAL
        assert result.decision == "block"

    def test_categories_sum_and_cap(self):
        result = SignatureLayer(rule_store()).analyze(
            http_event("/q?a=' OR 1=1&b=<script>alert(1)</script>")
        )
        assert result.matched == ["sql_injection", "xss_script"]
        assert result.score == 100

    def test_encoded_traversal(self):
        result = SignatureLayer(rule_store()).analyze(http_event("/files?f=..%2F..%2Fetc%2Fpasswd"))
        assert result.matched == ["file_inclusion"]

    def test_scanner_user_agent(self):
        result = SignatureLayer(rule_store()).analyze(http_event("/", user_agent="sqlmap/1.7"))
        assert result.matched == ["scanner_user_agent"]
        assert result.decision == "block"

    def test_log_only_rule_does_not_demand_block(self):
        result = SignatureLayer(rule_store()).analyze(http_event("/", user_agent="Googlebot/2.1"))
        assert result.matched == ["generic_bot"]
        assert result.decision is None
        assert result.score == 50

    def test_benign_request(self):
        result = SignatureLayer(rule_store()).analyze(http_event("/index.html"))
        assert not result.triggered
        assert result.score == 0
        assert result.evidence["rule_set_version"] == 1

    def test_deterministic(self):
        layer = SignatureLayer(rule_store())
        event = http_event("/q?a=' OR 1=1&b=<script>")
        first, second = layer.analyze(event), layer.analyze(event)
        assert first.matched == second.matched
        assert first.score == second.score
        assert first.evidence == second.evidence

    def test_disabled_rule_skipped(self):
        store = rule_store()
        store.set_enabled("sql_injection", False)
        result = SignatureLayer(store).analyze(http_event("/search?q=' OR 1=1"))
        assert "sql_injection" not in result.matched


class TestDryRun:

    def test_accuracy_and_errors(self):
        ruleset = rule_store().snapshot()
        report = dry_run(ruleset, [
            (http_event("/search?q=' OR 1=1"), True),
            (http_event("/index.html"), False),
            (http_event("/about"), True),
            (http_event("/", user_agent="Googlebot/2.1"), False),
        ])
        assert report["total"] == 4
        assert report["accuracy"] == 0.75
        assert report["false_positives"] == 0
        assert report["false_negatives"] == 1
        assert report["results"][0]["matched"] == ["sql_injection"]

    def test_empty(self):
        assert dry_run(rule_store().snapshot(), [])["accuracy"] is None


# ---------------------------------------------------------------------------
# Anomaly
# ---------------------------------------------------------------------------

def flat_event(ts: float, path: str = "/home", country: str = "US") -> SecurityEvent:
    return SecurityEvent(
        event_id=f"e{ts}",
        kind=EventKind.HTTP,
        timestamp=ts,
        subject_key="ip:203.0.113.9",
        source_ip="203.0.113.9",
        target=path,
        country=country,
    )


class TestAnomalyLayer:

    def _warmed(self) -> AnomalyLayer:
        layer = AnomalyLayer(TrustStore())
        for i in range(10):
            layer.analyze(flat_event(36_000 + i * 600))
        return layer

    def test_warmup_scores_nothing(self):
        layer = AnomalyLayer(TrustStore())
        result = layer.analyze(flat_event(36_000, path="/admin"))
        assert not result.triggered
        assert result.evidence["observations"] == 0

    def test_baseline_grows(self):
        store = TrustStore()
        layer = AnomalyLayer(store)
        layer.analyze(flat_event(36_000))
        layer.analyze(flat_event(36_600))
        assert store.get("ip:203.0.113.9", now=36_600).baseline.observations == 2

    def test_suspicious_navigation(self):
        result = self._warmed().analyze(flat_event(42_000, path="/admin"))
        assert result.triggered
        assert result.matched == ["suspicious-navigation"]
        assert result.score == 25

    def test_new_geo(self):
        result = self._warmed().analyze(flat_event(42_000, country="RU"))
        assert result.matched == ["new-geo"]
        assert result.score == 15

    def test_known_behaviour_is_quiet(self):
        assert not self._warmed().analyze(flat_event(42_000)).triggered


# ---------------------------------------------------------------------------
# Reputation
# ---------------------------------------------------------------------------

class TestReputationLayer:

    def _cache(self) -> IOCCache:
        cache = IOCCache()
        cache.apply([IOC(IndicatorType.IP, "203.0.113.9", 0.9, priority="high", source="feed")])
        return cache

    def test_ioc_hit(self):
        result = ReputationLayer(self._cache()).analyze(http_event())
        assert result.triggered
        assert result.score == 90
        assert result.severity is Severity.CRITICAL
        assert result.matched == ["ip:203.0.113.9"]
        assert result.evidence["iocs"][0]["source"] == "feed"

    def test_no_hit(self):
        result = ReputationLayer(self._cache()).analyze(http_event(ip="198.51.100.20"))
        assert not result.triggered

    def test_low_trust_penalty(self):
        trust = TrustStore()
        event = http_event(ip="198.51.100.20")
        trust.record_verification(event.subject_key, 5.0, {}, allowed=False, now=event.timestamp)
        result = ReputationLayer(IOCCache(), trust).analyze(event)
        assert result.score == 10
        assert result.evidence["low_trust"] == 5.0


# ---------------------------------------------------------------------------
# Zero trust
# ---------------------------------------------------------------------------

class TestZeroTrustLayer:

    def test_trust_65_denies(self):
        layer = ZeroTrustLayer(TrustStore(), LiveConfig(), default_checks())
        result = layer.analyze(access_event())
        assert result.decision == "deny"
        assert result.evidence["trust_score"] == 65
        assert result.score == 35
        factors = {f["name"]: f["score"] for f in result.evidence["factors"]}
        assert factors == {
            "identity": 8, "device": 14, "context": 13,
            "behavior": 10, "policy": 20, "risk_adjustment": 0,
        }

    def test_strong_auth_allows(self):
        layer = ZeroTrustLayer(TrustStore(), LiveConfig(), default_checks())
        result = layer.analyze(access_event(auth={"method": "mfa"}))
        assert result.decision == "allow"
        assert result.score == 0
        assert not result.triggered

    def test_threshold_is_live(self):
        config = LiveConfig()
        layer = ZeroTrustLayer(TrustStore(), config, default_checks())
        config.update(trust_threshold=60)
        assert layer.analyze(access_event()).decision == "allow"

    def test_verification_recorded(self):
        store = TrustStore()
        event = access_event()
        ZeroTrustLayer(store, LiveConfig(), default_checks()).analyze(event)
        profile = store.get(event.subject_key, now=event.timestamp)
        assert profile.verifications == 1
        assert profile.denials == 1
        assert profile.factors["identity"] == 8

    def test_failing_check_scores_zero_and_others_run(self):
        class Broken:
            name = "broken"
            max_score = 25.0

            def evaluate(self, event, profile):
                raise RuntimeError("boom")

        layer = ZeroTrustLayer(TrustStore(), LiveConfig(), [Broken(), PolicyCheck()])
        trust, factors = layer.verify(access_event())
        assert trust == 20
        assert factors[0].error == "RuntimeError: boom"
        assert factors[1].score == 20

    def test_policy_requires_role(self):
        check = PolicyCheck()
        denied = check.evaluate(access_event("/admin/users"), None)
        granted = check.evaluate(access_event("/admin/users", auth={"roles": ["admin"]}), None)
        assert denied.score == 0
        assert granted.score == 20

    def test_identity_failed_attempts(self):
        factor = IdentityCheck().evaluate(access_event(auth={"method": "sso", "failed_attempts": 5}), None)
        assert factor.score == 10

    def test_context_trusted_network_and_geo_deny(self):
        check = ContextCheck(geo_deny=["US"], trusted_networks=parse_networks(["10.0.0.0/8"]))
        factor = check.evaluate(access_event(), None)
        assert factor.details["geo"] == "denied"
        assert factor.details["network"] == "trusted"
        assert factor.score == 10

    def test_trust_factor_to_dict(self):
        assert TrustFactor("x", 1.234, 5.0).to_dict()["score"] == 1.23

    def test_http_events_not_applicable(self):
        layer = ZeroTrustLayer(TrustStore(), LiveConfig(), default_checks())
        assert not layer.applies_to(http_event())
