"""engine/layers/__init__.py"""
from .anomaly import AnomalyLayer
from .base import BaseLayer
from .reputation import ReputationLayer
from .signature import SignatureLayer
from .zero_trust import ZeroTrustLayer

__all__ = [
    "AnomalyLayer",
    "BaseLayer",
    "ReputationLayer",
    "SignatureLayer",
    "ZeroTrustLayer",
]
