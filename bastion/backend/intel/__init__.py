"""
intel/__init__.py

Public API for the threat-intel sub-package.
"""

from .feed_client import ThreatFeedClient
from .models import IOC, FeedVerdict, normalize_indicator
from .refresher import ThreatIntelRefresher
from .retry import async_retry

__all__ = [
    "FeedVerdict",
    "IOC",
    "ThreatFeedClient",
    "ThreatIntelRefresher",
    "async_retry",
    "normalize_indicator",
]
