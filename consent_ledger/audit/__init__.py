"""
Audit subpackage for the consent ledger

Hash-chained, append-only ledger of consent transitions and policy decisions.
"""

from .ledger import (
    AuditEventType,
    AuditEntry,
    AuditLedger,
    AuditLogDB,
    ChainVerification,
    compute_entry_hash,
    verify_chain,
)

__all__ = [
    "AuditEventType",
    "AuditEntry",
    "AuditLedger",
    "AuditLogDB",
    "ChainVerification",
    "compute_entry_hash",
    "verify_chain",
]
