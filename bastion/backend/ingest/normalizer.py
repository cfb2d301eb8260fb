"""
ingest/normalizer.py

Converts a raw input descriptor into an immutable SecurityEvent.

Accepted descriptors:
  HTTP     {ip, method, uri, query, headers, body, user_agent}
  ACCESS   {user_id, device_id, resource, context{geo, time, network, auth, device}}
  NETWORK  {src_ip, dst_ip, dst_port, protocol, bytes}

Design principles:
  - Synchronous and fast — no I/O. Called on the event loop thread.
  - Missing source identity raises MalformedEventError. The processor
    turns that into a fail-safe Block; we never guess an identity.
  - The canonical content string is built in a fixed order so identical
    descriptors always produce identical content (matchers depend on it).
  - Percent-encoded payloads are matched twice: raw (for encoded
    traversal signatures) and decoded (for everything else).
"""

from __future__ import annotations

import hashlib
import ipaddress
import json
import logging
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping
from urllib.parse import unquote_plus, urlencode, urlsplit

from ..errors import MalformedEventError, OversizedEventError
from ..models import EventKind, IndicatorType, SecurityEvent
from .client_ip import Network, resolve_client_ip

logger = logging.getLogger(__name__)

# Headers folded into the canonical content (attacker-controlled, commonly
# used as injection carriers).
CONTENT_HEADERS: tuple[str, ...] = (
    "referer",
    "cookie",
    "x-forwarded-for",
    "x-real-ip",
    "x-original-url",
    "x-rewrite-url",
)

COUNTRY_HEADERS: tuple[str, ...] = ("cf-ipcountry", "x-geo-country")

_URL_RE = re.compile(r"https?://[^\s'\"<>\\]+", re.IGNORECASE)
_MAX_INDICATORS = 20


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _require(raw: Mapping[str, Any], name: str) -> str:
    value = raw.get(name)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise MalformedEventError(f"missing required field {name!r}", field=name)
    return str(value).strip()


def _valid_ip(value: str, field: str) -> str:
    try:
        return str(ipaddress.ip_address(value))
    except ValueError as exc:
        raise MalformedEventError(f"invalid IP address in {field!r}: {value!r}", field=field) from exc


def _context_section(ctx: Mapping[str, Any], name: str, scalar_key: str | None = None) -> dict[str, Any]:
    """Context sub-object as a plain dict; a bare string is accepted where scalar_key is given."""
    value = ctx.get(name) or {}
    if scalar_key is not None and isinstance(value, str):
        return {scalar_key: value}
    if not isinstance(value, Mapping):
        raise MalformedEventError(f"context.{name} must be a mapping", field=f"context.{name}")
    return dict(value)


def _lower_headers(headers: Any) -> dict[str, str]:
    if not headers:
        return {}
    if not isinstance(headers, Mapping):
        raise MalformedEventError("headers must be a mapping", field="headers")
    return {str(k).lower(): str(v) for k, v in headers.items()}


def _body_bytes(body: Any) -> bytes:
    if body is None:
        return b""
    if isinstance(body, bytes):
        return body
    if isinstance(body, str):
        return body.encode("utf-8", errors="replace")
    # Structured bodies (JSON forms): sort keys for a stable digest
    return json.dumps(body, sort_keys=True, default=str).encode("utf-8")


def _query_string(query: Any) -> str:
    if not query:
        return ""
    if isinstance(query, Mapping):
        return urlencode(sorted((str(k), str(v)) for k, v in query.items()))
    return str(query).lstrip("?")


def build_canonical_content(
    uri: str,
    query: str,
    body: str,
    headers: Mapping[str, str],
) -> str:
    """URI + query + body + selected headers, raw then decoded."""
    parts = [uri, query, body]
    parts.extend(f"{name}: {headers[name]}" for name in CONTENT_HEADERS if name in headers)
    raw = "\n".join(p for p in parts if p)
    decoded = unquote_plus(raw)
    return raw if decoded == raw else f"{raw}\n{decoded}"


def extract_indicators(
    ips: Iterable[str],
    content: str,
    payload_digest: str,
) -> tuple[tuple[IndicatorType, str], ...]:
    """Collect observables for IOC lookup, deduplicated, in a stable order."""
    seen: set[tuple[IndicatorType, str]] = set()
    out: list[tuple[IndicatorType, str]] = []

    def add(kind: IndicatorType, value: str) -> None:
        item = (kind, value)
        if value and item not in seen and len(out) < _MAX_INDICATORS:
            seen.add(item)
            out.append(item)

    for ip in ips:
        add(IndicatorType.IP, ip)
    for match in _URL_RE.finditer(content):
        url = match.group(0).rstrip(".,;)")
        add(IndicatorType.URL, url)
        host = (urlsplit(url).hostname or "").lower()
        if host:
            try:
                ipaddress.ip_address(host)
                add(IndicatorType.IP, host)
            except ValueError:
                add(IndicatorType.DOMAIN, host)
    if payload_digest:
        add(IndicatorType.HASH, payload_digest)
    return tuple(out)


def _context_hour(value: Any, fallback_ts: float) -> int:
    """Hour of day (UTC) from an epoch, ISO-8601 string or explicit hour."""
    if isinstance(value, bool):
        value = None
    if isinstance(value, int) and 0 <= value <= 23:
        return value
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc).hour
        except (OverflowError, OSError, ValueError) as exc:
            raise MalformedEventError(f"context.time out of range: {value!r}", field="context.time") from exc
    if isinstance(value, str) and value:
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise MalformedEventError(f"unparseable context.time {value!r}", field="context.time") from exc
        if dt.tzinfo is not None:
            dt = dt.astimezone(timezone.utc)
        return dt.hour
    return datetime.fromtimestamp(fallback_ts, tz=timezone.utc).hour


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------

class Normalizer:
    """
    Stateless descriptor → SecurityEvent converter.

    Args:
        max_body_bytes:  Bodies larger than this raise OversizedEventError.
        trusted_proxies: Peers whose forwarding headers are honoured.
    """

    def __init__(
        self,
        max_body_bytes: int = 10 * 1024 * 1024,
        trusted_proxies: Iterable[Network] = (),
    ) -> None:
        self.max_body_bytes = max_body_bytes
        self.trusted_proxies = tuple(trusted_proxies)

    def normalize(self, raw: Mapping[str, Any], kind: EventKind | str) -> SecurityEvent:
        if not isinstance(raw, Mapping):
            raise MalformedEventError("descriptor must be a mapping")
        try:
            kind = EventKind(kind)
        except ValueError as exc:
            raise MalformedEventError(f"unknown event kind {kind!r}", field="kind") from exc

        if kind is EventKind.HTTP:
            return self.normalize_http(raw)
        if kind is EventKind.ACCESS:
            return self.normalize_access(raw)
        return self.normalize_network(raw)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def normalize_http(self, raw: Mapping[str, Any]) -> SecurityEvent:
        peer_ip = _valid_ip(_require(raw, "ip"), "ip")
        headers = _lower_headers(raw.get("headers"))
        source_ip = resolve_client_ip(peer_ip, headers, self.trusted_proxies)

        body = _body_bytes(raw.get("body"))
        if len(body) > self.max_body_bytes:
            raise OversizedEventError(
                f"body of {len(body)} bytes exceeds limit of {self.max_body_bytes}",
                field="body",
            )

        uri = str(raw.get("uri") or "/")
        query = _query_string(raw.get("query"))
        if not query and "?" in uri:
            uri, query = uri.split("?", 1)
        target = f"{uri}?{query}" if query else uri

        user_agent = str(raw.get("user_agent") or headers.get("user-agent", ""))
        body_text = body.decode("utf-8", errors="replace")
        content = build_canonical_content(uri, query, body_text, headers)
        digest = hashlib.sha256(body).hexdigest() if body else ""

        country = next(
            (headers[h].strip().upper() for h in COUNTRY_HEADERS if headers.get(h, "").strip()),
            None,
        )

        ts = time.time()
        return SecurityEvent(
            event_id=str(uuid.uuid4()),
            kind=EventKind.HTTP,
            timestamp=ts,
            subject_key=f"ip:{source_ip}",
            source_ip=source_ip,
            target=target,
            method=str(raw.get("method") or "GET").upper(),
            content=content,
            user_agent=user_agent,
            headers=headers,
            payload_digest=digest,
            payload_size=len(body),
            country=country,
            context={"peer_ip": peer_ip} if peer_ip != source_ip else {},
            indicators=extract_indicators([source_ip], content, digest),
        )

    # ------------------------------------------------------------------
    # Access request
    # ------------------------------------------------------------------

    def normalize_access(self, raw: Mapping[str, Any]) -> SecurityEvent:
        user_id = _require(raw, "user_id")
        device_id = _require(raw, "device_id")
        resource = str(raw.get("resource") or "")

        ctx_raw = raw.get("context") or {}
        if not isinstance(ctx_raw, Mapping):
            raise MalformedEventError("context must be a mapping", field="context")

        ts = time.time()

        geo = _context_section(ctx_raw, "geo", scalar_key="country")
        country = str(geo.get("country", "")).upper() or None

        network = _context_section(ctx_raw, "network", scalar_key="ip")
        source_ip = None
        if network.get("ip"):
            source_ip = _valid_ip(str(network["ip"]), "context.network.ip")

        context = {
            "geo": {**geo, "country": country} if country else dict(geo),
            "hour": _context_hour(ctx_raw.get("time"), ts),
            "network": {**network, "ip": source_ip} if source_ip else dict(network),
            "auth": _context_section(ctx_raw, "auth"),
            "device": _context_section(ctx_raw, "device"),
        }

        return SecurityEvent(
            event_id=str(uuid.uuid4()),
            kind=EventKind.ACCESS,
            timestamp=ts,
            subject_key=f"user:{user_id}|device:{device_id}",
            source_ip=source_ip,
            user_id=user_id,
            device_id=device_id,
            target=resource,
            method="ACCESS",
            country=country,
            context=context,
            indicators=extract_indicators([source_ip] if source_ip else [], "", ""),
        )

    # ------------------------------------------------------------------
    # Network flow
    # ------------------------------------------------------------------

    def normalize_network(self, raw: Mapping[str, Any]) -> SecurityEvent:
        src_ip = _valid_ip(_require(raw, "src_ip"), "src_ip")
        dst_ip = _valid_ip(str(raw["dst_ip"]), "dst_ip") if raw.get("dst_ip") else ""
        try:
            dst_port = int(raw.get("dst_port") or 0)
            size = int(raw.get("bytes") or 0)
        except (TypeError, ValueError) as exc:
            raise MalformedEventError(f"non-numeric flow field: {exc}") from exc
        if not 0 <= dst_port <= 65535:
            raise MalformedEventError(f"dst_port out of range: {dst_port}", field="dst_port")

        protocol = str(raw.get("protocol") or "TCP").upper()
        ips = [src_ip] + ([dst_ip] if dst_ip else [])

        return SecurityEvent(
            event_id=str(uuid.uuid4()),
            kind=EventKind.NETWORK,
            timestamp=time.time(),
            subject_key=f"ip:{src_ip}",
            source_ip=src_ip,
            target=f"{dst_ip}:{dst_port}" if dst_ip else f":{dst_port}",
            method=protocol,
            payload_size=max(0, size),
            context={"dst_ip": dst_ip, "dst_port": dst_port, "protocol": protocol},
            indicators=extract_indicators(ips, "", ""),
        )
