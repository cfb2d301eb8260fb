"""
backend/processor.py

EventProcessor — drives one event through the pipeline:

    raw descriptor
      → Normalizer                  (MalformedEventError → fail-safe Block)
      → fast path                   (quarantine → rate limit → geo policy)
      → DetectionEngine.run()       (layers in parallel, per-event deadline)
      → RiskAggregator.assess()     (fusion + correlation bonus)
      → DecisionEngine.decide()
      → ResponseExecutor.apply()    (quarantine / alert / response plan)
      → audit sink, trust outcome, watchlist, verdict queue

Every call terminates in exactly one Verdict. Per-event errors are folded
into the Verdict; nothing but task cancellation escapes process(), and
even then the partial Verdict is recorded before CancelledError is
re-raised.

build_processor() wires the full object graph from Settings.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Mapping, Protocol

import httpx

from . import pipeline
from .config import LiveConfig, PipelineConfig, Settings, parse_business_hours
from .correlation import CorrelationWindow, RiskAggregator, classify
from .decision import (
    AlertDispatcher,
    DecisionEngine,
    DecisionState,
    EventLifecycle,
    ResponseExecutor,
    ResponsePlan,
)
from .engine import Action, Classification, DetectionEngine, LayerRun, Verdict
from .engine.layers import AnomalyLayer, ReputationLayer, SignatureLayer, ZeroTrustLayer
from .engine.layers.zero_trust import default_checks
from .engine.scoring import EWMAScorer
from .errors import EventValidationError
from .ingest import Normalizer, RateLimiter, parse_networks
from .intel import ThreatFeedClient, ThreatIntelRefresher
from .metrics import METRICS
from .models import EventKind, SecurityEvent
from .storage import IOCCache, QuarantineStore, RuleStore, TrustStore

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    def record(self, verdict: Verdict) -> bool: ...


def _subject_hint(raw: Any) -> str:
    """Best-effort subject for a descriptor that failed normalization."""
    if not isinstance(raw, Mapping):
        return "unknown"
    for field in ("ip", "src_ip"):
        if raw.get(field):
            return f"ip:{raw[field]}"
    if raw.get("user_id"):
        return f"user:{raw['user_id']}|device:{raw.get('device_id') or '?'}"
    return "unknown"


class EventProcessor:
    def __init__(
        self,
        normalizer: Normalizer,
        engine: DetectionEngine,
        aggregator: RiskAggregator,
        decisions: DecisionEngine,
        executor: ResponseExecutor,
        quarantine_store: QuarantineStore,
        config: LiveConfig,
        trust_store: TrustStore | None = None,
        rate_limiter: RateLimiter | None = None,
        audit_sink: AuditSink | None = None,
        refresher: ThreatIntelRefresher | None = None,
        geo_allow: tuple[str, ...] | list[str] = (),
        geo_deny: tuple[str, ...] | list[str] = (),
    ) -> None:
        self.normalizer = normalizer
        self.engine = engine
        self.aggregator = aggregator
        self.decisions = decisions
        self.executor = executor
        self.quarantine_store = quarantine_store
        self.config = config
        self.trust_store = trust_store
        self.rate_limiter = rate_limiter
        self.audit_sink = audit_sink
        self.refresher = refresher
        self.geo_allow = frozenset(c.upper() for c in geo_allow)
        self.geo_deny = frozenset(c.upper() for c in geo_deny)

        # Set by build_processor(); the API reads them
        self.rule_store: RuleStore | None = None
        self.ioc_cache: IOCCache | None = None
        self.alerts: AlertDispatcher | None = executor.alerts

        self.stats: dict[str, int] = {
            "processed": 0,
            "fast_path": 0,
            "degraded": 0,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def process(
        self,
        raw: Mapping[str, Any],
        kind: EventKind | str,
        cancel: asyncio.Event | None = None,
    ) -> Verdict:
        verdict, _ = await self.handle(raw, kind, cancel)
        return verdict

    async def handle(
        self,
        raw: Mapping[str, Any],
        kind: EventKind | str,
        cancel: asyncio.Event | None = None,
    ) -> tuple[Verdict, ResponsePlan]:
        """Process one descriptor and return the Verdict plus its HTTP response plan."""
        t0 = time.perf_counter()
        METRICS.events_received.inc()
        cfg = self.config()
        lifecycle = EventLifecycle()

        try:
            event = self.normalizer.normalize(raw, kind)
        except EventValidationError as exc:
            verdict = self._malformed(raw, kind, exc, cfg)
            lifecycle.advance(DecisionState.DECIDED)
            return self._finalize(verdict, None, lifecycle, t0)

        verdict = self._fast_path(event, cfg)
        if verdict is not None:
            lifecycle.advance(DecisionState.DECIDED)
            return self._finalize(verdict, event, lifecycle, t0)

        lifecycle.advance(DecisionState.EVALUATING)
        run = LayerRun()
        try:
            await self.engine.run(event, cfg.per_event_deadline_ms, cancel=cancel, run=run)
        except asyncio.CancelledError:
            verdict = self._evaluate(event, run, cfg)
            lifecycle.advance(DecisionState.DECIDED)
            self._finalize(verdict, event, lifecycle, t0)
            raise

        verdict = self._evaluate(event, run, cfg)
        lifecycle.advance(DecisionState.DECIDED)
        return self._finalize(verdict, event, lifecycle, t0)

    # ------------------------------------------------------------------
    # Decision paths
    # ------------------------------------------------------------------

    def _malformed(
        self,
        raw: Any,
        kind: Any,
        exc: EventValidationError,
        cfg: PipelineConfig,
    ) -> Verdict:
        METRICS.events_malformed.inc()
        logger.warning("Malformed %s event rejected: %s", getattr(kind, "value", kind), exc)
        score = cfg.block_threshold
        return Verdict(
            event_id=str(uuid.uuid4()),
            subject_key=_subject_hint(raw),
            kind=str(getattr(kind, "value", kind)),
            risk_score=score,
            classification=classify(score, cfg),
            action=Action.BLOCK,
            reason=f"malformed event: {exc}",
            status_code=exc.status_code,
            fast_path=True,
        )

    def _fast_path(self, event: SecurityEvent, cfg: PipelineConfig) -> Verdict | None:
        """Synchronous pre-checks that decide without running any layer."""
        now = event.timestamp

        keys = [event.subject_key]
        if event.source_ip and f"ip:{event.source_ip}" != event.subject_key:
            keys.append(f"ip:{event.source_ip}")
        for key in keys:
            entry = self.quarantine_store.is_quarantined(key, now)
            if entry is not None:
                self.quarantine_store.record_hit(key)
                METRICS.fast_path_blocks.inc()
                return self._policy_block(
                    event, cfg, 403,
                    f"subject quarantined: {entry.reason}",
                    score=entry.risk_score,
                )

        if self.rate_limiter is not None and event.source_ip:
            allowed, why = self.rate_limiter.check(event.source_ip)
            if not allowed:
                METRICS.rate_limited.inc()
                return self._policy_block(event, cfg, 429, f"rate limit exceeded ({why})")

        if event.kind is EventKind.HTTP and event.country:
            country = event.country
            if country in self.geo_deny or (self.geo_allow and country not in self.geo_allow):
                return self._policy_block(event, cfg, 403, f"geo policy: country {country} blocked")

        return None

    @staticmethod
    def _policy_block(
        event: SecurityEvent,
        cfg: PipelineConfig,
        status: int,
        reason: str,
        score: int | None = None,
    ) -> Verdict:
        score = cfg.block_threshold if score is None else score
        return Verdict(
            event_id=event.event_id,
            subject_key=event.subject_key,
            kind=event.kind.value,
            risk_score=score,
            classification=classify(score, cfg),
            action=Action.BLOCK,
            reason=reason,
            status_code=status,
            fast_path=True,
            source_ip=event.source_ip,
            timestamp=event.timestamp,
        )

    def _evaluate(self, event: SecurityEvent, run: LayerRun, cfg: PipelineConfig) -> Verdict:
        results = run.ordered()
        assessment = self.aggregator.assess(event, results, cfg, now=event.timestamp)

        fail_safe = []
        for result in results:
            layer = self.engine.get_layer(result.layer)
            if result.degraded and layer is not None and layer.fail_safe:
                fail_safe.append(result.layer)
        decision = self.decisions.decide(assessment, fail_safe)

        trust = None
        zt = assessment.layers.get("zero_trust")
        if zt is not None and "trust_score" in zt["evidence"]:
            trust = int(round(zt["evidence"]["trust_score"]))

        return Verdict(
            event_id=event.event_id,
            subject_key=event.subject_key,
            kind=event.kind.value,
            risk_score=assessment.risk_score,
            classification=assessment.classification,
            action=decision.action,
            escalated=decision.escalated,
            quarantined=decision.quarantined,
            reason=decision.reason,
            status_code=decision.status_code,
            matched_rules=assessment.matched_rules,
            matched_iocs=assessment.matched_iocs,
            layers=assessment.layers,
            correlation_bonus=assessment.correlation_bonus,
            trust_score=trust,
            degraded=bool(assessment.degraded_layers) or run.incomplete,
            degraded_layers=assessment.degraded_layers,
            incomplete=run.incomplete,
            quarantine_ttl_seconds=decision.quarantine_ttl_seconds,
            source_ip=event.source_ip,
            timestamp=event.timestamp,
        )

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def _finalize(
        self,
        verdict: Verdict,
        event: SecurityEvent | None,
        lifecycle: EventLifecycle,
        t0: float,
    ) -> tuple[Verdict, ResponsePlan]:
        verdict.latency_ms = (time.perf_counter() - t0) * 1000

        try:
            plan = self.executor.apply(verdict)
        except Exception:
            logger.exception("Response side effects failed for %s", verdict.event_id)
            plan = self.executor.plan(verdict)
        lifecycle.advance(DecisionState.TERMINAL)

        self._audit(verdict)
        if event is not None and not verdict.fast_path and self.trust_store is not None:
            self.trust_store.record_outcome(event.subject_key, verdict.risk_score, now=event.timestamp)
        if (
            event is not None
            and self.refresher is not None
            and verdict.classification is not Classification.BENIGN
        ):
            self.refresher.submit(event.indicators)

        self._count(verdict)
        pipeline.safe_put_nowait(pipeline.verdict_queue, verdict.to_dict())

        if verdict.action.blocks:
            logger.warning(
                "%s %s score=%d status=%d — %s",
                verdict.action.value.upper(), verdict.subject_key,
                verdict.risk_score, verdict.status_code, verdict.reason,
            )
        else:
            logger.debug("%r in %.2fms", verdict, verdict.latency_ms)
        return verdict, plan

    def _audit(self, verdict: Verdict) -> None:
        if self.audit_sink is None:
            return
        try:
            ok = self.audit_sink.record(verdict)
        except Exception:
            logger.exception("Audit sink raised for %s", verdict.event_id)
            ok = False
        if not ok:
            METRICS.audit_failures.inc()

    def _count(self, verdict: Verdict) -> None:
        self.stats["processed"] += 1
        getattr(METRICS, f"verdicts_{verdict.action.value}").inc()
        if verdict.quarantined:
            METRICS.verdicts_quarantine.inc()
        if verdict.fast_path:
            self.stats["fast_path"] += 1
        if verdict.degraded:
            self.stats["degraded"] += 1
        if verdict.incomplete:
            METRICS.events_incomplete.inc()

    def shutdown(self) -> None:
        self.engine.shutdown()


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def build_processor(
    settings: Settings,
    audit_sink: AuditSink | None = None,
    alert_sink=None,
    feed_transport: httpx.AsyncBaseTransport | None = None,
) -> EventProcessor:
    """
    Build the full pipeline from *settings*. Loads rules and IOC seeds;
    ConfigurationError propagates so the service refuses to start.
    """
    config = LiveConfig(settings.pipeline_config())
    trusted = parse_networks(settings.TRUSTED_NETWORKS)
    alerts = AlertDispatcher(sink=alert_sink)

    rule_store = RuleStore(
        settings.RULES_PATH,
        require_checksums=settings.REQUIRE_CHECKSUMS,
        on_integrity_error=alerts.integrity,
    )
    rule_store.load()

    ioc_cache = IOCCache(
        require_checksums=settings.REQUIRE_CHECKSUMS,
        on_integrity_error=alerts.integrity,
    )
    if settings.IOC_PATH:
        ioc_cache.load_file(settings.IOC_PATH)

    trust_store = TrustStore()
    quarantine_store = QuarantineStore()

    checks = default_checks(
        geo_allow=settings.GEO_ALLOW_LIST,
        geo_deny=settings.GEO_DENY_LIST,
        trusted_networks=trusted,
        business_hours=parse_business_hours(settings.BUSINESS_HOURS),
    )
    engine = DetectionEngine(
        [
            SignatureLayer(rule_store),
            AnomalyLayer(trust_store, EWMAScorer(half_life_seconds=settings.ANOMALY_HALF_LIFE_SECONDS)),
            ReputationLayer(ioc_cache, trust_store),
            ZeroTrustLayer(trust_store, config, checks),
        ],
        max_workers=settings.LAYER_WORKERS,
    )

    client = ThreatFeedClient(
        base_url=settings.THREAT_FEED_URL,
        api_key=settings.THREAT_FEED_API_KEY,
        name=settings.THREAT_FEED_NAME,
        rate_limit_delay_seconds=settings.THREAT_FEED_RATE_LIMIT_DELAY_SECONDS,
        transport=feed_transport,
    )
    refresher = ThreatIntelRefresher(
        client,
        ioc_cache,
        priority=settings.THREAT_FEED_PRIORITY,
        ioc_ttl_hours=settings.IOC_TTL_HOURS,
        refresh_seconds=settings.THREAT_FEED_REFRESH_SECONDS,
    )

    processor = EventProcessor(
        normalizer=Normalizer(settings.MAX_BODY_BYTES, trusted_proxies=trusted),
        engine=engine,
        aggregator=RiskAggregator(CorrelationWindow(settings.CORRELATION_WINDOW_SECONDS)),
        decisions=DecisionEngine(config),
        executor=ResponseExecutor(quarantine_store, alerts),
        quarantine_store=quarantine_store,
        config=config,
        trust_store=trust_store,
        rate_limiter=RateLimiter(
            settings.RATE_LIMIT_REQUESTS_PER_MINUTE,
            settings.RATE_LIMIT_BURST,
            whitelist=settings.WHITELIST_IPS,
        ),
        audit_sink=audit_sink,
        refresher=refresher,
        geo_allow=settings.GEO_ALLOW_LIST,
        geo_deny=settings.GEO_DENY_LIST,
    )
    processor.rule_store = rule_store
    processor.ioc_cache = ioc_cache
    return processor
