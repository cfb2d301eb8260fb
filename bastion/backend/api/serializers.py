"""
api/serializers.py

Pydantic request/response models for the REST API.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class VerdictResponse(BaseModel):
    event_id: str
    subject_key: str
    kind: str
    risk_score: int
    classification: str
    action: str
    escalated: bool = False
    quarantined: bool = False
    reason: str = ""
    status_code: int = 200
    matched_rules: list[str] = []
    matched_iocs: list[str] = []
    layers: dict[str, Any] = {}
    correlation_bonus: int = 0
    trust_score: int | None = None
    fast_path: bool = False
    degraded: bool = False
    degraded_layers: list[str] = []
    incomplete: bool = False
    quarantine_ttl_seconds: int | None = None
    source_ip: str | None = None
    timestamp: float
    latency_ms: float = 0.0

    @classmethod
    def from_dict(cls, d: dict) -> "VerdictResponse":
        d = dict(d)
        d["layers"] = d.get("layers") or {}
        d["matched_rules"] = d.get("matched_rules") or []
        d["matched_iocs"] = d.get("matched_iocs") or []
        d["degraded_layers"] = d.get("degraded_layers") or []
        return cls.model_validate(d)


class PaginatedVerdictsResponse(BaseModel):
    items: list[VerdictResponse]
    total: int
    limit: int
    offset: int
    has_more: bool


class StatsResponse(BaseModel):
    total_verdicts: int
    verdicts_last_hour: int
    verdicts_by_action: dict[str, int]
    verdicts_by_classification: dict[str, int]
    top_blocked_subjects: list[dict]
    avg_latency_ms: float | None
    max_latency_ms: float | None
    degraded_verdicts: int
    pipeline_stats: dict


class ConfigResponse(BaseModel):
    block_threshold: int
    quarantine_threshold: int
    escalate_threshold: int
    trust_threshold: int
    suspicious_min_score: int
    malicious_min_score: int
    correlation_window_seconds: int
    correlation_bonus: int
    auto_block_duration_minutes: int
    per_event_deadline_ms: int


class ConfigUpdateRequest(BaseModel):
    block_threshold: int | None = None
    quarantine_threshold: int | None = None
    escalate_threshold: int | None = None
    trust_threshold: int | None = None
    suspicious_min_score: int | None = None
    malicious_min_score: int | None = None
    correlation_window_seconds: int | None = None
    correlation_bonus: int | None = None
    auto_block_duration_minutes: int | None = None
    per_event_deadline_ms: int | None = None


class QuarantineRequest(BaseModel):
    key: str = Field(min_length=1)
    """Subject key, e.g. 'ip:203.0.113.9' or 'user:alice|device:d1'."""

    minutes: int = Field(default=60, gt=0, le=7 * 24 * 60)
    reason: str = "manual quarantine"
    risk_score: int = Field(default=100, ge=0, le=100)


class QuarantineEntryResponse(BaseModel):
    key: str
    reason: str
    risk_score: int
    created_at: float
    expires_at: float
    remaining_seconds: float
    auto: bool
    hits: int


class RuleRequest(BaseModel):
    id: str = Field(min_length=1)
    category: str
    patterns: list[str] = Field(min_length=1)
    severity: str
    action: str = "block"
    target: str = "content"
    enabled: bool = True
    description: str = ""


class RuleResponse(BaseModel):
    id: str
    category: str
    patterns: list[str]
    severity: str
    action: str
    target: str
    enabled: bool
    description: str


class RuleSetResponse(BaseModel):
    version: int
    source: str
    loaded_at: float
    rules: list[RuleResponse]
    rejected: list[str] = []


class RuleTestCase(BaseModel):
    request: dict[str, Any]
    """HTTP descriptor {ip, method, uri, query, headers, body, user_agent}."""

    expected_block: bool = False


class RuleTestRequest(BaseModel):
    cases: list[RuleTestCase] = Field(min_length=1, max_length=500)


class WatchlistItem(BaseModel):
    type: str
    value: str = Field(min_length=1)


class WatchlistRequest(BaseModel):
    indicators: list[WatchlistItem] = Field(min_length=1, max_length=1000)
