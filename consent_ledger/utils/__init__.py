"""
Utility functions for the consent ledger
ID generation, input validation and time helpers
"""

from .clock import Clock, utc_now, ensure_utc
from .ids import generate_consent_id, generate_audit_id, generate_approval_token
from .validators import (
    strip_null_bytes,
    validate_user_id,
    validate_purpose,
    validate_data_types,
    validate_valid_until,
    validate_token,
)

__all__ = [
    # Time
    "Clock",
    "utc_now",
    "ensure_utc",
    # ID generation
    "generate_consent_id",
    "generate_audit_id",
    "generate_approval_token",
    # Validators
    "strip_null_bytes",
    "validate_user_id",
    "validate_purpose",
    "validate_data_types",
    "validate_valid_until",
    "validate_token",
]
