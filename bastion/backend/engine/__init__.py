"""engine/__init__.py"""
from .engine import DetectionEngine, LayerRun
from .models import Action, Classification, DetectionResult, Severity, Verdict

__all__ = [
    "Action",
    "Classification",
    "DetectionEngine",
    "DetectionResult",
    "LayerRun",
    "Severity",
    "Verdict",
]
