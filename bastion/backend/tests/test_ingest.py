"""
tests/test_ingest.py

Tests for ingest/ — Normalizer, client IP resolution and the fast-path
RateLimiter. All synchronous.
"""

from __future__ import annotations

import pytest

from bastion.backend.errors import MalformedEventError, OversizedEventError
from bastion.backend.ingest import Normalizer, RateLimiter, parse_networks, resolve_client_ip
from bastion.backend.models import EventKind, IndicatorType


@pytest.fixture
def normalizer():
    return Normalizer(max_body_bytes=1024)


# ---------------------------------------------------------------------------
# HTTP descriptors
# ---------------------------------------------------------------------------

class TestNormalizeHttp:

    def test_basic_fields(self, normalizer):
        event = normalizer.normalize(
            {"ip": "203.0.113.9", "method": "post", "uri": "/login", "body": "user=a"},
            EventKind.HTTP,
        )
        assert event.kind is EventKind.HTTP
        assert event.subject_key == "ip:203.0.113.9"
        assert event.source_ip == "203.0.113.9"
        assert event.method == "POST"
        assert event.payload_size == 6
        assert "user=a" in event.content

    def test_query_split_from_uri(self, normalizer):
        event = normalizer.normalize({"ip": "203.0.113.9", "uri": "/search?q=1"}, "http")
        assert event.path == "/search"
        assert event.target == "/search?q=1"

    def test_decoded_content_appended(self, normalizer):
        event = normalizer.normalize(
            {"ip": "203.0.113.9", "uri": "/a", "query": "f=..%2F..%2Fetc%2Fpasswd"}, "http",
        )
        assert "..%2F" in event.content
        assert "../../etc/passwd" in event.content

    def test_same_descriptor_same_content(self, normalizer):
        raw = {"ip": "203.0.113.9", "uri": "/x", "query": {"b": "2", "a": "1"}, "body": {"k": "v"}}
        a = normalizer.normalize(raw, "http")
        b = normalizer.normalize(raw, "http")
        assert a.content == b.content
        assert a.payload_digest == b.payload_digest
        assert a.event_id != b.event_id

    def test_missing_ip_is_malformed(self, normalizer):
        with pytest.raises(MalformedEventError) as exc_info:
            normalizer.normalize({"uri": "/"}, "http")
        assert exc_info.value.status_code == 400

    def test_invalid_ip_is_malformed(self, normalizer):
        with pytest.raises(MalformedEventError):
            normalizer.normalize({"ip": "999.1.1.1"}, "http")

    def test_oversized_body(self, normalizer):
        with pytest.raises(OversizedEventError) as exc_info:
            normalizer.normalize({"ip": "203.0.113.9", "body": "x" * 1025}, "http")
        assert exc_info.value.status_code == 413

    def test_unknown_kind(self, normalizer):
        with pytest.raises(MalformedEventError):
            normalizer.normalize({"ip": "203.0.113.9"}, "smtp")

    def test_country_header(self, normalizer):
        event = normalizer.normalize(
            {"ip": "203.0.113.9", "headers": {"CF-IPCountry": "kp"}}, "http",
        )
        assert event.country == "KP"

    def test_indicators_extracted(self, normalizer):
        event = normalizer.normalize(
            {"ip": "203.0.113.9", "uri": "/r", "query": "next=http://evil.example/x", "body": "p"},
            "http",
        )
        kinds = [k for k, _ in event.indicators]
        assert (IndicatorType.IP, "203.0.113.9") in event.indicators
        assert (IndicatorType.DOMAIN, "evil.example") in event.indicators
        assert IndicatorType.URL in kinds
        assert IndicatorType.HASH in kinds


# ---------------------------------------------------------------------------
# Access requests / network flows
# ---------------------------------------------------------------------------

class TestNormalizeAccess:

    def test_subject_and_context(self, normalizer):
        event = normalizer.normalize(
            {
                "user_id": "alice",
                "device_id": "laptop-1",
                "resource": "/reports",
                "context": {"geo": "us", "time": 10, "network": "10.0.0.5", "auth": {"method": "sso"}},
            },
            EventKind.ACCESS,
        )
        assert event.subject_key == "user:alice|device:laptop-1"
        assert event.country == "US"
        assert event.source_ip == "10.0.0.5"
        assert event.context["hour"] == 10
        assert event.context["auth"] == {"method": "sso"}

    def test_iso_time(self, normalizer):
        event = normalizer.normalize(
            {"user_id": "a", "device_id": "d", "context": {"time": "2024-05-01T23:30:00Z"}},
            "access",
        )
        assert event.context["hour"] == 23

    def test_missing_device_is_malformed(self, normalizer):
        with pytest.raises(MalformedEventError):
            normalizer.normalize({"user_id": "alice"}, "access")

    @pytest.mark.parametrize("context, field", [
        ({"geo": ["US"]}, "context.geo"),
        ({"network": 5}, "context.network"),
        ({"auth": "password"}, "context.auth"),
        ({"device": ["managed"]}, "context.device"),
        ({"time": 1e20}, "context.time"),
        ({"time": float("nan")}, "context.time"),
    ])
    def test_badly_shaped_context_is_malformed(self, normalizer, context, field):
        with pytest.raises(MalformedEventError) as exc_info:
            normalizer.normalize({"user_id": "alice", "device_id": "d1", "context": context}, "access")
        assert exc_info.value.field == field


class TestNormalizeNetwork:

    def test_flow(self, normalizer):
        event = normalizer.normalize(
            {"src_ip": "198.51.100.3", "dst_ip": "10.0.0.1", "dst_port": 22, "protocol": "tcp"},
            "network",
        )
        assert event.subject_key == "ip:198.51.100.3"
        assert event.target == "10.0.0.1:22"
        assert event.method == "TCP"

    def test_bad_port(self, normalizer):
        with pytest.raises(MalformedEventError):
            normalizer.normalize({"src_ip": "198.51.100.3", "dst_port": 70000}, "network")


# ---------------------------------------------------------------------------
# Client IP resolution
# ---------------------------------------------------------------------------

class TestClientIp:

    def test_untrusted_peer_ignores_headers(self):
        ip = resolve_client_ip("203.0.113.9", {"x-forwarded-for": "198.51.100.1"})
        assert ip == "203.0.113.9"

    def test_trusted_proxy_uses_first_public_forwarded(self):
        proxies = parse_networks(["10.0.0.0/8"])
        headers = {"x-forwarded-for": "192.168.1.5, 93.184.216.34, 8.8.4.4"}
        assert resolve_client_ip("10.0.0.2", headers, proxies) == "93.184.216.34"

    def test_normalizer_records_peer(self):
        normalizer = Normalizer(trusted_proxies=parse_networks(["10.0.0.0/8"]))
        event = normalizer.normalize(
            {"ip": "10.0.0.2", "headers": {"X-Forwarded-For": "93.184.216.34"}}, "http",
        )
        assert event.subject_key == "ip:93.184.216.34"
        assert event.context["peer_ip"] == "10.0.0.2"


# ---------------------------------------------------------------------------
# RateLimiter
# ---------------------------------------------------------------------------

class TestRateLimiter:

    def test_sustained_rate(self):
        rl = RateLimiter(requests_per_minute=3, burst=0)
        assert all(rl.check("a", now=float(i))[0] for i in range(3))
        assert rl.check("a", now=3.0) == (False, "RATE")

    def test_window_slides(self):
        rl = RateLimiter(requests_per_minute=1, burst=0)
        assert rl.check("a", now=0.0)[0]
        assert not rl.check("a", now=30.0)[0]
        assert rl.check("a", now=60.0)[0]

    def test_burst(self):
        rl = RateLimiter(requests_per_minute=100, burst=2)
        rl.check("a", now=0.0)
        rl.check("a", now=0.1)
        assert rl.check("a", now=0.2) == (False, "BURST")

    def test_whitelist(self):
        rl = RateLimiter(requests_per_minute=1, whitelist=["127.0.0.1"])
        for _ in range(5):
            assert rl.check("127.0.0.1") == (True, "WHITELISTED")

    def test_disabled(self):
        assert RateLimiter(requests_per_minute=0).check("a") == (True, "DISABLED")

    def test_keys_independent(self):
        rl = RateLimiter(requests_per_minute=1, burst=0)
        assert rl.check("a", now=0.0)[0]
        assert rl.check("b", now=0.0)[0]
