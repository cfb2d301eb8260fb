"""
ingest/__init__.py

Public API for the ingest sub-package.
"""

from .client_ip import parse_networks, resolve_client_ip
from .normalizer import Normalizer, build_canonical_content
from .rate_limiter import RateLimiter

__all__ = [
    "Normalizer",
    "RateLimiter",
    "build_canonical_content",
    "parse_networks",
    "resolve_client_ip",
]
