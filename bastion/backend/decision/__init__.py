"""decision/__init__.py"""
from .alerts import AlertDispatcher
from .engine import Decision, DecisionEngine, DecisionState, EventLifecycle, quarantine_ttl_seconds
from .response import SECURITY_HEADERS, ResponseExecutor, ResponsePlan, block_body

__all__ = [
    "AlertDispatcher",
    "Decision",
    "DecisionEngine",
    "DecisionState",
    "EventLifecycle",
    "ResponseExecutor",
    "ResponsePlan",
    "SECURITY_HEADERS",
    "block_body",
    "quarantine_ttl_seconds",
]
