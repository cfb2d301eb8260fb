"""
tests/test_processor.py

End-to-end tests for EventProcessor — descriptor in, Verdict out, through
the real layers built by build_processor().
"""

from __future__ import annotations

import asyncio
import time

import pytest

from bastion.backend.config import LiveConfig, PipelineConfig, load_settings
from bastion.backend.correlation import CorrelationWindow, RiskAggregator
from bastion.backend.decision import DecisionEngine, ResponseExecutor
from bastion.backend.engine import Action, Classification, DetectionEngine
from bastion.backend.engine.layers.base import BaseLayer
from bastion.backend.engine.models import DetectionResult
from bastion.backend.ingest import Normalizer
from bastion.backend.metrics import METRICS
from bastion.backend.models import EventKind, SecurityEvent
from bastion.backend.processor import EventProcessor, build_processor
from bastion.backend.storage import QuarantineStore

ACCESS_DESCRIPTOR = {
    "user_id": "u1",
    "device_id": "d1",
    "resource": "/reports",
    "context": {
        "geo": "US",
        "time": 10,
        "network": "10.0.0.5",
        "auth": {"method": "password", "failed_attempts": 2},
        "device": {"managed": True, "encrypted": True, "patched": True},
    },
}


@pytest.fixture(autouse=True)
def _reset_metrics():
    METRICS.reset_all()
    yield


def make_processor(**overrides) -> EventProcessor:
    overrides.setdefault("RATE_LIMIT_REQUESTS_PER_MINUTE", 0)
    return build_processor(load_settings(**overrides))


# ---------------------------------------------------------------------------
# Layers used to build processors by hand
# ---------------------------------------------------------------------------

class SlowLayer(BaseLayer):
    name = "slow"

    def analyze(self, event: SecurityEvent) -> DetectionResult:
        time.sleep(0.5)
        return DetectionResult(layer=self.name, triggered=True, score=90)


class SlowZeroTrust(SlowLayer):
    name = "zero_trust"
    kinds = frozenset({EventKind.ACCESS})
    fail_safe = True


def manual_processor(layers, deadline_ms: int = 50) -> EventProcessor:
    config = LiveConfig(PipelineConfig().updated(per_event_deadline_ms=deadline_ms))
    store = QuarantineStore()
    return EventProcessor(
        normalizer=Normalizer(),
        engine=DetectionEngine(layers),
        aggregator=RiskAggregator(CorrelationWindow()),
        decisions=DecisionEngine(config),
        executor=ResponseExecutor(store),
        quarantine_store=store,
        config=config,
    )


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------

class TestScenarios:

    @pytest.mark.asyncio
    async def test_sql_injection_blocked_and_quarantined(self):
        processor = make_processor()
        verdict = await processor.process(
            {"ip": "203.0.113.9", "uri": "/search?q=' OR 1=1"}, EventKind.HTTP,
        )
        assert verdict.action is Action.BLOCK
        assert verdict.risk_score >= 90
        assert verdict.classification is Classification.MALICIOUS
        assert verdict.matched_rules == ["sql_injection"]
        assert verdict.quarantined
        assert verdict.quarantine_ttl_seconds == 4 * 3600
        assert processor.quarantine_store.is_quarantined("ip:203.0.113.9") is not None
        processor.shutdown()

    @pytest.mark.asyncio
    async def test_quarantined_subject_short_circuits(self):
        processor = make_processor()
        processor.quarantine_store.quarantine("ip:203.0.113.9", "manual", 95, 3600)
        verdict, plan = await processor.handle({"ip": "203.0.113.9", "uri": "/index.html"}, "http")

        assert verdict.action is Action.BLOCK
        assert verdict.fast_path
        assert verdict.layers == {}
        assert verdict.status_code == 403
        assert plan.body["error"] == "Access denied"
        assert METRICS.fast_path_blocks.value == 1
        processor.shutdown()

    @pytest.mark.asyncio
    async def test_quarantine_block_is_sub_millisecond(self):
        processor = make_processor()
        processor.quarantine_store.quarantine("ip:203.0.113.9", "manual", 95, 3600)
        descriptor = {"ip": "203.0.113.9", "uri": "/index.html"}
        await processor.process(descriptor, "http")

        latencies = sorted([(await processor.process(descriptor, "http")).latency_ms for _ in range(50)])
        assert latencies[len(latencies) // 2] < 1.0
        processor.shutdown()

    @pytest.mark.asyncio
    async def test_low_trust_access_denied(self):
        processor = make_processor()
        verdict = await processor.process(ACCESS_DESCRIPTOR, EventKind.ACCESS)

        assert verdict.action is Action.DENY
        assert verdict.status_code == 403
        assert verdict.trust_score == 65
        assert verdict.risk_score == 35
        assert verdict.classification is Classification.SUSPICIOUS
        assert not verdict.quarantined
        processor.shutdown()

    @pytest.mark.asyncio
    async def test_benign_request_allowed(self):
        processor = make_processor()
        verdict, plan = await processor.handle({"ip": "203.0.113.9", "uri": "/index.html"}, "http")

        assert verdict.action is Action.ALLOW
        assert verdict.risk_score <= 10
        assert verdict.classification is Classification.BENIGN
        assert not verdict.quarantined
        assert plan.allowed
        assert processor.alerts.recent == []
        processor.shutdown()

    @pytest.mark.asyncio
    async def test_slow_layer_degrades_verdict(self):
        processor = manual_processor([SlowLayer()])
        t0 = time.perf_counter()
        verdict = await processor.process({"ip": "203.0.113.9", "uri": "/"}, "http")

        assert time.perf_counter() - t0 < 0.4
        assert verdict.degraded
        assert verdict.degraded_layers == ["slow"]
        assert verdict.action is Action.ALLOW
        processor.shutdown()

    @pytest.mark.asyncio
    async def test_zero_trust_timeout_fails_safe(self):
        processor = manual_processor([SlowZeroTrust()])
        verdict = await processor.process(ACCESS_DESCRIPTOR, "access")
        assert verdict.action is Action.DENY
        assert "fail-safe" in verdict.reason
        processor.shutdown()


# ---------------------------------------------------------------------------
# Fast path and error folding
# ---------------------------------------------------------------------------

class TestFastPath:

    @pytest.mark.asyncio
    async def test_malformed_event_blocked(self):
        processor = make_processor()
        verdict = await processor.process({"uri": "/"}, "http")
        assert verdict.action is Action.BLOCK
        assert verdict.status_code == 400
        assert verdict.fast_path
        assert verdict.risk_score == 70
        assert METRICS.events_malformed.value == 1
        processor.shutdown()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("context", [
        {"geo": ["US"]},
        {"network": 5},
        {"auth": "password"},
        {"device": "laptop"},
        {"time": 1e20},
    ])
    async def test_badly_shaped_access_context_blocked(self, context):
        processor = make_processor()
        verdict = await processor.process(
            {"user_id": "alice", "device_id": "d1", "context": context}, "access",
        )
        assert verdict.action is Action.BLOCK
        assert verdict.status_code == 400
        assert verdict.fast_path
        assert verdict.subject_key == "user:alice|device:d1"
        processor.shutdown()

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        processor = make_processor(RATE_LIMIT_REQUESTS_PER_MINUTE=1)
        first = await processor.process({"ip": "203.0.113.9", "uri": "/"}, "http")
        second = await processor.process({"ip": "203.0.113.9", "uri": "/"}, "http")
        assert first.action is Action.ALLOW
        assert second.status_code == 429
        assert second.fast_path
        processor.shutdown()

    @pytest.mark.asyncio
    async def test_geo_deny(self):
        processor = make_processor(GEO_DENY_LIST=["KP"])
        verdict = await processor.process(
            {"ip": "203.0.113.9", "uri": "/", "headers": {"CF-IPCountry": "KP"}}, "http",
        )
        assert verdict.status_code == 403
        assert "KP" in verdict.reason
        processor.shutdown()


class TestFinalization:

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_change_verdict(self):
        class BrokenSink:
            def record(self, verdict):
                raise OSError("disk full")

        processor = build_processor(
            load_settings(RATE_LIMIT_REQUESTS_PER_MINUTE=0), audit_sink=BrokenSink(),
        )
        verdict = await processor.process({"ip": "203.0.113.9", "uri": "/index.html"}, "http")
        assert verdict.action is Action.ALLOW
        assert METRICS.audit_failures.value == 1
        processor.shutdown()

    @pytest.mark.asyncio
    async def test_audit_sink_receives_every_verdict(self):
        recorded = []

        class ListSink:
            def record(self, verdict):
                recorded.append(verdict.event_id)
                return True

        processor = build_processor(
            load_settings(RATE_LIMIT_REQUESTS_PER_MINUTE=0), audit_sink=ListSink(),
        )
        a = await processor.process({"ip": "203.0.113.9", "uri": "/"}, "http")
        b = await processor.process({"uri": "/"}, "http")
        assert recorded == [a.event_id, b.event_id]
        processor.shutdown()

    @pytest.mark.asyncio
    async def test_cancel_event_marks_incomplete(self):
        processor = manual_processor([SlowLayer()], deadline_ms=2000)
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)
        verdict = await processor.process({"ip": "203.0.113.9", "uri": "/"}, "http", cancel=cancel)
        assert verdict.incomplete
        assert verdict.degraded
        assert METRICS.events_incomplete.value == 1
        processor.shutdown()

    @pytest.mark.asyncio
    async def test_suspicious_event_feeds_watchlist(self):
        processor = make_processor()
        await processor.process({"ip": "8.8.8.8", "uri": "/search?q=' OR 1=1"}, "http")
        assert processor.refresher.pending >= 1
        processor.shutdown()

    @pytest.mark.asyncio
    async def test_stats(self):
        processor = make_processor()
        await processor.process({"ip": "203.0.113.9", "uri": "/"}, "http")
        await processor.process({"uri": "/"}, "http")
        assert processor.stats["processed"] == 2
        assert processor.stats["fast_path"] == 1
        processor.shutdown()
