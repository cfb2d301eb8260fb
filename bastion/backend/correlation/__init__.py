"""correlation/__init__.py"""
from .aggregator import RiskAggregator, RiskAssessment, aggregate, classify
from .window import CorrelationWindow

__all__ = ["CorrelationWindow", "RiskAggregator", "RiskAssessment", "aggregate", "classify"]
