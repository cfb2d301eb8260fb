"""storage/__init__.py"""
from .database import Database
from .ioc_store import IOCCache
from .migrations import apply_migrations
from .quarantine_store import QuarantineEntry, QuarantineStore
from .repository import VerdictRepository
from .rule_store import Rule, RuleStore
from .trust_store import TrustProfile, TrustStore

__all__ = [
    "Database",
    "IOCCache",
    "QuarantineEntry",
    "QuarantineStore",
    "Rule",
    "RuleStore",
    "TrustProfile",
    "TrustStore",
    "VerdictRepository",
    "apply_migrations",
]
