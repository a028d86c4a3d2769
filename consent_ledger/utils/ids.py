"""
ID generation utilities for the consent ledger
Unique identifiers for consent versions and audit entries, plus approval tokens
"""

import secrets
import uuid

from ..constants import TokenDefaults


def generate_consent_id() -> str:
    """Generate consent version ID"""
    return f"consent_{uuid.uuid4()}"


def generate_audit_id() -> str:
    """Generate audit entry ID"""
    return f"audit_{uuid.uuid4()}"


def generate_approval_token(num_bytes: int = TokenDefaults.TOKEN_BYTES) -> str:
    """Generate an opaque, URL-safe approval token"""
    return secrets.token_hex(num_bytes)
