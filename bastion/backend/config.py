"""
backend/config.py

Application configuration via Pydantic Settings.
All values can be overridden with environment variables or a .env file.

Quick start — create a .env file in your project root:
    BLOCK_THRESHOLD=70
    TRUST_THRESHOLD=70
    THREAT_FEED_API_KEY=<virustotal key>
    GEO_DENY_LIST=KP,IR
    TRUSTED_NETWORKS=10.0.0.0/8

The subset of knobs that may change while the service runs lives in
PipelineConfig (see /api/config). Everything else needs a restart.
"""

from __future__ import annotations

import ipaddress
import json
import logging
import threading
from dataclasses import asdict, dataclass, replace

from pydantic import ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


def _split_list(v):
    if isinstance(v, str):
        v = v.strip()
        if v.startswith("["):
            try:
                return json.loads(v)
            except json.JSONDecodeError as exc:
                raise ValueError(f"invalid JSON list: {exc}") from exc
        return [item.strip() for item in v.split(",") if item.strip()]
    return v


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        # list fields arrive as raw strings; parse_lists handles CSV and JSON
        enable_decoding=False,
    )

    # Decision thresholds
    BLOCK_THRESHOLD: int = 70
    QUARANTINE_THRESHOLD: int = 90
    ESCALATE_THRESHOLD: int = 80
    TRUST_THRESHOLD: int = 70
    SUSPICIOUS_MIN_SCORE: int = 30
    MALICIOUS_MIN_SCORE: int = 60

    # Correlation
    CORRELATION_WINDOW_SECONDS: int = 300
    CORRELATION_BONUS: int = 15

    # Response
    AUTO_BLOCK_DURATION_MINUTES: int = 60

    # Latency
    PER_EVENT_DEADLINE_MS: int = 200
    LAYER_WORKERS: int = 16

    # Behavioral baseline
    ANOMALY_HALF_LIFE_SECONDS: int = 3600

    # Fast-path rate limit (0 disables)
    RATE_LIMIT_REQUESTS_PER_MINUTE: int = 600
    RATE_LIMIT_BURST: int = 100

    # Ingestion
    MAX_BODY_BYTES: int = 10 * 1024 * 1024

    # Rule / IOC sources
    RULES_PATH: str = ""
    IOC_PATH: str = ""
    REQUIRE_CHECKSUMS: bool = False

    # Threat feed
    THREAT_FEED_NAME: str = "virustotal"
    THREAT_FEED_URL: str = "https://www.virustotal.com/api/v3"
    THREAT_FEED_API_KEY: str = ""
    THREAT_FEED_RATE_LIMIT_DELAY_SECONDS: float = 15.0
    THREAT_FEED_REFRESH_SECONDS: int = 60
    THREAT_FEED_PRIORITY: str = "medium"
    IOC_TTL_HOURS: int = 24

    # Geo / network policy
    GEO_ALLOW_LIST: list[str] = []
    GEO_DENY_LIST: list[str] = []
    TRUSTED_NETWORKS: list[str] = []
    BUSINESS_HOURS: str = "7-20"

    # Whitelist: never rate-limited
    WHITELIST_IPS: list[str] = []

    # Storage
    DB_PATH: str = "data/verdicts.db"

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    # Logging
    LOG_LEVEL: str = "INFO"

    @field_validator(
        "GEO_ALLOW_LIST", "GEO_DENY_LIST", "TRUSTED_NETWORKS", "WHITELIST_IPS",
        mode="before",
    )
    @classmethod
    def parse_lists(cls, v):
        return _split_list(v)

    @field_validator("GEO_ALLOW_LIST", "GEO_DENY_LIST")
    @classmethod
    def upper_countries(cls, v: list[str]) -> list[str]:
        return [c.upper() for c in v]

    @field_validator("TRUSTED_NETWORKS")
    @classmethod
    def check_networks(cls, v: list[str]) -> list[str]:
        for cidr in v:
            ipaddress.ip_network(cidr, strict=False)
        return v

    @field_validator("BUSINESS_HOURS")
    @classmethod
    def check_hours(cls, v: str) -> str:
        parse_business_hours(v)
        return v

    @field_validator("THREAT_FEED_PRIORITY")
    @classmethod
    def check_priority(cls, v: str) -> str:
        v = v.lower()
        if v not in ("high", "medium", "low"):
            raise ValueError(f"priority must be high|medium|low, got {v!r}")
        return v

    @model_validator(mode="after")
    def check_thresholds(self) -> "Settings":
        self.pipeline_config().validate()
        if self.PER_EVENT_DEADLINE_MS <= 0:
            raise ValueError("PER_EVENT_DEADLINE_MS must be positive")
        if self.ANOMALY_HALF_LIFE_SECONDS <= 0:
            raise ValueError("ANOMALY_HALF_LIFE_SECONDS must be positive")
        return self

    def pipeline_config(self) -> "PipelineConfig":
        return PipelineConfig(
            block_threshold=self.BLOCK_THRESHOLD,
            quarantine_threshold=self.QUARANTINE_THRESHOLD,
            escalate_threshold=self.ESCALATE_THRESHOLD,
            trust_threshold=self.TRUST_THRESHOLD,
            suspicious_min_score=self.SUSPICIOUS_MIN_SCORE,
            malicious_min_score=self.MALICIOUS_MIN_SCORE,
            correlation_window_seconds=self.CORRELATION_WINDOW_SECONDS,
            correlation_bonus=self.CORRELATION_BONUS,
            auto_block_duration_minutes=self.AUTO_BLOCK_DURATION_MINUTES,
            per_event_deadline_ms=self.PER_EVENT_DEADLINE_MS,
        )


def parse_business_hours(spec: str) -> tuple[int, int]:
    """Parse "7-20" into (7, 20). Start is inclusive, end exclusive."""
    try:
        start_s, end_s = spec.split("-", 1)
        start, end = int(start_s), int(end_s)
    except ValueError as exc:
        raise ValueError(f"business hours must look like '7-20', got {spec!r}") from exc
    if not (0 <= start < end <= 24):
        raise ValueError(f"business hours out of range: {spec!r}")
    return start, end


# ---------------------------------------------------------------------------
# Live configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PipelineConfig:
    """
    Thresholds read by the processor on every event.

    Immutable: an update builds a new instance and swaps the reference,
    so an in-flight event sees one consistent set of values.
    """

    block_threshold: int = 70
    quarantine_threshold: int = 90
    escalate_threshold: int = 80
    trust_threshold: int = 70
    suspicious_min_score: int = 30
    malicious_min_score: int = 60
    correlation_window_seconds: int = 300
    correlation_bonus: int = 15
    auto_block_duration_minutes: int = 60
    per_event_deadline_ms: int = 200

    def validate(self) -> "PipelineConfig":
        for name in (
            "block_threshold", "quarantine_threshold", "escalate_threshold",
            "trust_threshold", "suspicious_min_score", "malicious_min_score",
            "correlation_bonus",
        ):
            value = getattr(self, name)
            if not 0 <= value <= 100:
                raise ConfigurationError(f"{name} must be in [0, 100], got {value}")
        if self.suspicious_min_score >= self.malicious_min_score:
            raise ConfigurationError(
                "suspicious_min_score must be below malicious_min_score "
                f"({self.suspicious_min_score} >= {self.malicious_min_score})"
            )
        if self.quarantine_threshold < self.block_threshold:
            raise ConfigurationError(
                "quarantine_threshold must not be below block_threshold "
                f"({self.quarantine_threshold} < {self.block_threshold})"
            )
        if self.correlation_window_seconds <= 0:
            raise ConfigurationError("correlation_window_seconds must be positive")
        if self.auto_block_duration_minutes <= 0:
            raise ConfigurationError("auto_block_duration_minutes must be positive")
        if self.per_event_deadline_ms <= 0:
            raise ConfigurationError("per_event_deadline_ms must be positive")
        return self

    def updated(self, **changes) -> "PipelineConfig":
        """Return a validated copy with *changes* applied."""
        unknown = set(changes) - set(asdict(self))
        if unknown:
            raise ConfigurationError(f"unknown config field(s): {sorted(unknown)}")
        return replace(self, **changes).validate()

    def as_dict(self) -> dict:
        return asdict(self)


class LiveConfig:
    """
    Holder for the current PipelineConfig. Calling it returns the active
    instance; update() validates first and swaps only on success.
    """

    def __init__(self, initial: PipelineConfig | None = None) -> None:
        self._current = (initial or PipelineConfig()).validate()
        self._lock = threading.Lock()

    def __call__(self) -> PipelineConfig:
        return self._current

    def update(self, **changes) -> PipelineConfig:
        with self._lock:
            new = self._current.updated(**changes)
            self._current = new
        logger.warning("Pipeline config updated: %s", changes)
        return new


def load_settings(**overrides) -> Settings:
    """
    Build Settings, converting pydantic validation failures into
    ConfigurationError so startup can fail fast with one error type.
    """
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid configuration: {exc}") from exc
