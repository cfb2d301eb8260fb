"""
intel/feed_client.py

Async VirusTotal-v3 style threat-feed client.

Implements the collaborator contract Lookup(indicator) -> FeedVerdict.
Only the background refresher calls it; the per-event path reads the
local IOC cache instead.

Endpoints:
  ip      GET /ip_addresses/{ip}
  domain  GET /domains/{domain}
  url     GET /urls/{urlsafe-base64 of the URL, unpadded}
  hash    GET /files/{hash}

Threat score = (malicious + 0.5 * suspicious) / total_engines * 100,
taken from data.attributes.last_analysis_stats.

Usage:
    client = ThreatFeedClient(api_key="...", rate_limit_delay_seconds=15)
    verdict = await client.lookup(IndicatorType.IP, "198.51.100.7")
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from typing import Any, Awaitable, Callable

import httpx

from ..errors import ExternalFeedError
from ..metrics import METRICS
from ..models import IndicatorType
from .models import FeedVerdict, normalize_indicator

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://www.virustotal.com/api/v3"
_TIMEOUT_SECONDS = 15.0


def url_identifier(url: str) -> str:
    return base64.urlsafe_b64encode(url.encode("utf-8")).decode("ascii").rstrip("=")


def feed_path(kind: IndicatorType, value: str) -> str:
    if kind is IndicatorType.IP:
        return f"/ip_addresses/{value}"
    if kind is IndicatorType.DOMAIN:
        return f"/domains/{value}"
    if kind is IndicatorType.URL:
        return f"/urls/{url_identifier(value)}"
    return f"/files/{value}"


def parse_analysis(data: dict[str, Any]) -> FeedVerdict:
    """Build a FeedVerdict from a v3 'data' object."""
    attrs = data.get("attributes") or {}
    stats = attrs.get("last_analysis_stats") or {}
    malicious = int(stats.get("malicious", 0) or 0)
    suspicious = int(stats.get("suspicious", 0) or 0)
    total = sum(int(v or 0) for v in stats.values() if isinstance(v, (int, float)))

    score = (malicious + suspicious * 0.5) / total * 100 if total > 0 else 0.0
    return FeedVerdict(
        malicious=malicious > 0,
        score=round(score, 2),
        metadata={
            "malicious_engines": malicious,
            "suspicious_engines": suspicious,
            "total_engines": total,
            "reputation": attrs.get("reputation"),
            "country": attrs.get("country"),
            "as_owner": attrs.get("as_owner"),
            "categories": attrs.get("categories") or {},
        },
    )


class ThreatFeedClient:
    """
    Args:
        base_url:                 Feed API root.
        api_key:                  Sent as x-apikey. Empty = client disabled.
        name:                     Feed name, used as the IOC source.
        rate_limit_delay_seconds: Minimum spacing between two calls.
        transport:                Optional httpx transport (tests use MockTransport).
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        api_key: str = "",
        name: str = "virustotal",
        rate_limit_delay_seconds: float = 15.0,
        timeout: float = _TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.name = name
        self.rate_limit_delay_seconds = rate_limit_delay_seconds
        self._clock = clock
        self._sleep = sleep
        self._last_call: float | None = None
        self._throttle_lock = asyncio.Lock()
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"x-apikey": api_key, "Accept": "application/json"},
        )
        self.stats: dict[str, int] = {"calls": 0, "errors": 0, "not_found": 0}

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _throttle(self) -> None:
        async with self._throttle_lock:
            if self._last_call is not None:
                wait = self.rate_limit_delay_seconds - (self._clock() - self._last_call)
                if wait > 0:
                    await self._sleep(wait)
            self._last_call = self._clock()

    async def lookup(self, kind: IndicatorType, value: str) -> FeedVerdict | None:
        """
        Query the feed for one indicator.

        Returns None when the feed has never seen it (404).
        Raises ExternalFeedError on transport failure or a non-2xx status.
        """
        kind = IndicatorType(kind)
        value = normalize_indicator(kind, value)
        await self._throttle()

        self.stats["calls"] += 1
        METRICS.feed_calls.inc()
        try:
            resp = await self._client.get(feed_path(kind, value))
        except httpx.HTTPError as exc:
            self._failed()
            raise ExternalFeedError(self.name, f"{type(exc).__name__}: {exc}") from exc

        if resp.status_code == 404:
            self.stats["not_found"] += 1
            return None
        if resp.status_code >= 400:
            self._failed()
            raise ExternalFeedError(
                self.name,
                f"HTTP {resp.status_code} for {kind.value}",
                status_code=resp.status_code,
            )

        try:
            body = resp.json()
        except ValueError as exc:
            self._failed()
            raise ExternalFeedError(self.name, "invalid JSON response") from exc
        data = (body.get("data") if isinstance(body, dict) else None) or {}

        verdict = parse_analysis(data)
        logger.debug(
            "%s lookup %s=%s → malicious=%s score=%.1f",
            self.name, kind.value, value, verdict.malicious, verdict.score,
        )
        return verdict

    def _failed(self) -> None:
        self.stats["errors"] += 1
        METRICS.feed_errors.inc()
