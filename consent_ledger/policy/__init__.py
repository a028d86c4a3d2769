"""
Policy decision module for the consent ledger
"""

from .engine import DenyReason, PolicyDecision, PolicyEffect, PolicyRequest, evaluate

__all__ = [
    "DenyReason",
    "PolicyDecision",
    "PolicyEffect",
    "PolicyRequest",
    "evaluate",
]
