"""
Consent lifecycle module for the consent ledger
Versioned consent records, approval tokens and the transactional store
"""

from .models import (
    Consent,
    ConsentStatus,
    TransitionOutcome,
    TransitionResult,
    can_transition,
    make_consent_group_id,
)
from .tokens import ApprovalTokenIssuer
from .storage import ConsentRecordDB, ConsentStore

__all__ = [
    "Consent",
    "ConsentStatus",
    "TransitionOutcome",
    "TransitionResult",
    "can_transition",
    "make_consent_group_id",
    "ApprovalTokenIssuer",
    "ConsentRecordDB",
    "ConsentStore",
]
