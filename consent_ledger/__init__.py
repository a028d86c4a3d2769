"""
Consent Ledger
Versioned consent lifecycle, policy decisions and a hash-chained audit ledger
"""

__version__ = "0.1.0"

# Core exports
from .config import LedgerConfig, get_ledger_config, update_ledger_config, configure_logging
from .exceptions import (
    ConsentLedgerError, InvalidInputError, ConsentNotFoundError,
    StorageFailureError, AuditChainError
)
from .database import Database

# Audit ledger
from .audit import (
    AuditEventType, AuditEntry, AuditLedger, ChainVerification, verify_chain
)

# Consent lifecycle
from .consent import (
    Consent, ConsentStatus, TransitionOutcome, TransitionResult,
    ApprovalTokenIssuer, ConsentStore
)

# Policy decisions
from .policy import DenyReason, PolicyDecision, PolicyEffect, PolicyRequest, evaluate

# Orchestration
from .consent.schemas import CreateConsentRequest, RevokeSemanticRequest, ProcessRequest
from .consent.service import ConsentService, ProcessingOutcome, SweepReport, get_consent_service

__all__ = [
    # Config
    "LedgerConfig",
    "get_ledger_config",
    "update_ledger_config",
    "configure_logging",

    # Errors
    "ConsentLedgerError",
    "InvalidInputError",
    "ConsentNotFoundError",
    "StorageFailureError",
    "AuditChainError",

    # Storage
    "Database",

    # Audit
    "AuditEventType",
    "AuditEntry",
    "AuditLedger",
    "ChainVerification",
    "verify_chain",

    # Consent
    "Consent",
    "ConsentStatus",
    "TransitionOutcome",
    "TransitionResult",
    "ApprovalTokenIssuer",
    "ConsentStore",

    # Policy
    "DenyReason",
    "PolicyDecision",
    "PolicyEffect",
    "PolicyRequest",
    "evaluate",

    # Service
    "CreateConsentRequest",
    "RevokeSemanticRequest",
    "ProcessRequest",
    "ConsentService",
    "ProcessingOutcome",
    "SweepReport",
    "get_consent_service",
]
