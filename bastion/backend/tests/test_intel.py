"""
tests/test_intel.py

Tests for intel/ — the threat-feed client (httpx.MockTransport, no
network), retry with backoff, and the background refresher.
"""

from __future__ import annotations

import json

import httpx
import pytest

from bastion.backend.errors import ExternalFeedError
from bastion.backend.intel import FeedVerdict, ThreatFeedClient, ThreatIntelRefresher, async_retry
from bastion.backend.intel.feed_client import feed_path, parse_analysis, url_identifier
from bastion.backend.intel.retry import is_retryable
from bastion.backend.models import IndicatorType
from bastion.backend.storage.ioc_store import IOCCache

BASE_URL = "https://feed.test/api/v3"


def analysis(malicious: int = 0, suspicious: int = 0, harmless: int = 60, undetected: int = 10) -> dict:
    return {
        "data": {
            "attributes": {
                "last_analysis_stats": {
                    "malicious": malicious,
                    "suspicious": suspicious,
                    "harmless": harmless,
                    "undetected": undetected,
                },
                "reputation": -12,
                "country": "NL",
                "as_owner": "Example AS",
            }
        }
    }


def make_client(handler, **kwargs) -> ThreatFeedClient:
    kwargs.setdefault("rate_limit_delay_seconds", 0)
    return ThreatFeedClient(
        base_url=BASE_URL,
        api_key="test-key",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

class TestParsing:

    def test_threat_score(self):
        verdict = parse_analysis(analysis(malicious=5, suspicious=2, harmless=60, undetected=13)["data"])
        assert verdict.malicious
        assert verdict.score == 7.5
        assert verdict.metadata["total_engines"] == 80
        assert verdict.metadata["as_owner"] == "Example AS"

    def test_no_engines(self):
        verdict = parse_analysis({})
        assert not verdict.malicious
        assert verdict.score == 0.0

    def test_confidence_capped(self):
        assert FeedVerdict(True, 100.0).confidence == 0.95
        assert FeedVerdict(True, 40.0).confidence == 0.5

    def test_paths(self):
        assert feed_path(IndicatorType.IP, "8.8.8.8") == "/ip_addresses/8.8.8.8"
        assert feed_path(IndicatorType.DOMAIN, "evil.example") == "/domains/evil.example"
        assert feed_path(IndicatorType.HASH, "abc") == "/files/abc"
        assert feed_path(IndicatorType.URL, "http://x/") == f"/urls/{url_identifier('http://x/')}"
        assert "=" not in url_identifier("http://evil.example/a")


# ---------------------------------------------------------------------------
# ThreatFeedClient
# ---------------------------------------------------------------------------

class TestThreatFeedClient:

    @pytest.mark.asyncio
    async def test_lookup_ip(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["key"] = request.headers.get("x-apikey")
            return httpx.Response(200, json=analysis(malicious=8, harmless=72, undetected=0))

        client = make_client(handler)
        verdict = await client.lookup(IndicatorType.IP, "8.8.8.8")
        await client.aclose()

        assert seen == {"path": "/api/v3/ip_addresses/8.8.8.8", "key": "test-key"}
        assert verdict.malicious
        assert verdict.score == 10.0
        assert client.stats["calls"] == 1

    @pytest.mark.asyncio
    async def test_not_found_is_none(self):
        client = make_client(lambda request: httpx.Response(404, json={"error": {}}))
        assert await client.lookup(IndicatorType.DOMAIN, "Unknown.Example") is None
        assert client.stats["not_found"] == 1
        await client.aclose()

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        client = make_client(lambda request: httpx.Response(503))
        with pytest.raises(ExternalFeedError) as exc_info:
            await client.lookup(IndicatorType.IP, "8.8.8.8")
        assert exc_info.value.status_code == 503
        assert exc_info.value.retryable
        assert client.stats["errors"] == 1
        await client.aclose()

    @pytest.mark.asyncio
    async def test_forbidden_is_not_retryable(self):
        client = make_client(lambda request: httpx.Response(403))
        with pytest.raises(ExternalFeedError) as exc_info:
            await client.lookup(IndicatorType.IP, "8.8.8.8")
        assert not exc_info.value.retryable
        await client.aclose()

    @pytest.mark.asyncio
    async def test_transport_error_wrapped(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)
        with pytest.raises(ExternalFeedError) as exc_info:
            await client.lookup(IndicatorType.IP, "8.8.8.8")
        assert exc_info.value.status_code is None
        await client.aclose()

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        client = make_client(lambda request: httpx.Response(200, content=b"<html>"))
        with pytest.raises(ExternalFeedError):
            await client.lookup(IndicatorType.IP, "8.8.8.8")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_throttle_spaces_calls(self):
        slept: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            slept.append(seconds)

        client = make_client(
            lambda request: httpx.Response(200, json=analysis()),
            rate_limit_delay_seconds=15.0,
            clock=lambda: 100.0,
            sleep=fake_sleep,
        )
        await client.lookup(IndicatorType.IP, "8.8.8.8")
        await client.lookup(IndicatorType.IP, "8.8.4.4")
        await client.aclose()
        assert slept == [15.0]

    def test_disabled_without_key(self):
        assert not ThreatFeedClient(api_key="").enabled


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

class TestRetry:

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ExternalFeedError("vt", "HTTP 503", status_code=503)
            return "ok"

        assert await async_retry(flaky, attempts=3, base_delay=0.001) == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_non_retryable_raised_immediately(self):
        calls = []

        async def forbidden():
            calls.append(1)
            raise ExternalFeedError("vt", "HTTP 403", status_code=403)

        with pytest.raises(ExternalFeedError):
            await async_retry(forbidden, attempts=5, base_delay=0.001)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_last_failure_reraised(self):
        async def down():
            raise ExternalFeedError("vt", "timeout")

        with pytest.raises(ExternalFeedError):
            await async_retry(down, attempts=2, base_delay=0.001)

    @pytest.mark.asyncio
    async def test_attempts_validated(self):
        async def noop():
            return None

        with pytest.raises(ValueError):
            await async_retry(noop, attempts=0)

    def test_is_retryable(self):
        assert is_retryable(httpx.ReadTimeout("slow"))
        assert not is_retryable(KeyError("x"))


# ---------------------------------------------------------------------------
# ThreatIntelRefresher
# ---------------------------------------------------------------------------

class FakeFeed:
    name = "fakefeed"

    def __init__(self, verdicts: dict[str, FeedVerdict | None | Exception], enabled: bool = True):
        self.verdicts = verdicts
        self.enabled = enabled
        self.calls: list[str] = []

    async def lookup(self, kind, value):
        self.calls.append(value)
        result = self.verdicts.get(value)
        if isinstance(result, Exception):
            raise result
        return result


class TestRefresher:

    @pytest.mark.asyncio
    async def test_malicious_results_cached(self):
        feed = FakeFeed({
            "198.51.100.7": FeedVerdict(True, 50.0, {"malicious_engines": 35}),
            "8.8.8.8": FeedVerdict(False, 0.0),
        })
        cache = IOCCache()
        refresher = ThreatIntelRefresher(feed, cache, priority="high", ioc_ttl_hours=1)
        refresher.submit([(IndicatorType.IP, "198.51.100.7"), ("ip", "8.8.8.8")])

        written = await refresher.refresh_once(now=1000.0)

        assert written == 1
        ioc = cache.lookup(IndicatorType.IP, "198.51.100.7", now=1000.0)
        assert ioc.source == "fakefeed"
        assert ioc.confidence == 0.6
        assert ioc.expires_at == 1000.0 + 3600
        assert ioc.metadata["feed_score"] == 50.0
        assert cache.lookup(IndicatorType.IP, "8.8.8.8", now=1000.0) is None
        assert refresher.pending == 0

    def test_submit_dedupes_and_skips_invalid(self):
        refresher = ThreatIntelRefresher(FakeFeed({}), IOCCache())
        added = refresher.submit([
            ("ip", "198.51.100.7"),
            ("ip", "198.51.100.7"),
            ("ip", "not-an-ip"),
            ("domain", "Evil.Example."),
        ])
        assert added == 2
        assert refresher.pending == 2

    @pytest.mark.asyncio
    async def test_recently_checked_not_requeued(self):
        feed = FakeFeed({"198.51.100.7": None})
        refresher = ThreatIntelRefresher(feed, IOCCache())
        refresher.submit([("ip", "198.51.100.7")])
        await refresher.refresh_once()
        assert refresher.submit([("ip", "198.51.100.7")]) == 0

    @pytest.mark.asyncio
    async def test_feed_failure_counted_cache_untouched(self):
        feed = FakeFeed({"198.51.100.7": ExternalFeedError("fakefeed", "HTTP 403", status_code=403)})
        cache = IOCCache()
        refresher = ThreatIntelRefresher(feed, cache, retry_attempts=1)
        refresher.submit([("ip", "198.51.100.7")])

        assert await refresher.refresh_once() == 0
        assert refresher.stats["failed"] == 1
        assert "HTTP 403" in refresher.last_error
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_disabled_feed_does_nothing(self):
        feed = FakeFeed({}, enabled=False)
        refresher = ThreatIntelRefresher(feed, IOCCache())
        refresher.submit([("ip", "198.51.100.7")])
        assert await refresher.refresh_once() == 0
        assert feed.calls == []
        assert refresher.status()["enabled"] is False

    @pytest.mark.asyncio
    async def test_end_to_end_with_http_client(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=json.dumps(analysis(malicious=30, harmless=30)))

        client = make_client(handler)
        cache = IOCCache()
        refresher = ThreatIntelRefresher(client, cache)
        refresher.submit([("domain", "evil.example")])
        assert await refresher.refresh_once() == 1
        assert cache.lookup(IndicatorType.DOMAIN, "evil.example").threat_type == "feed"
        await client.aclose()
