"""
ingest/client_ip.py

Resolve the real client address of an HTTP request.

Forwarding headers are attacker-controlled unless the socket peer is one
of our own proxies, so they are only honoured when the peer address sits
inside a trusted network. The first public, parseable address in the
first header present wins; otherwise the peer address is used.
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Iterable, Mapping

logger = logging.getLogger(__name__)

# Checked in order; the first header present decides.
FORWARDING_HEADERS: tuple[str, ...] = (
    "cf-connecting-ip",
    "x-forwarded-for",
    "x-forwarded",
    "x-cluster-client-ip",
    "forwarded-for",
    "x-real-ip",
)

Network = ipaddress.IPv4Network | ipaddress.IPv6Network


def parse_networks(cidrs: Iterable[str]) -> tuple[Network, ...]:
    return tuple(ipaddress.ip_network(c, strict=False) for c in cidrs)


def in_networks(ip: str, networks: Iterable[Network]) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return any(addr in net for net in networks)


def _first_public(value: str) -> str | None:
    for part in value.split(","):
        candidate = part.strip()
        try:
            addr = ipaddress.ip_address(candidate)
        except ValueError:
            continue
        if addr.is_global:
            return str(addr)
    return None


def resolve_client_ip(
    peer_ip: str,
    headers: Mapping[str, str],
    trusted_proxies: Iterable[Network] = (),
) -> str:
    """
    Return the address to treat as the event's source identity.

    Args:
        peer_ip:         Socket peer address as seen by the server.
        headers:         Request headers with lower-cased names.
        trusted_proxies: Networks whose forwarding headers are believed.
    """
    proxies = tuple(trusted_proxies)
    if not proxies or not in_networks(peer_ip, proxies):
        return peer_ip

    for name in FORWARDING_HEADERS:
        value = headers.get(name)
        if not value:
            continue
        forwarded = _first_public(value)
        if forwarded:
            logger.debug("Client IP %s resolved via %s (peer %s)", forwarded, name, peer_ip)
            return forwarded
    return peer_ip
