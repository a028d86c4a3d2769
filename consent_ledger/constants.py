"""
Constants for the consent ledger

Centralized identifiers for service metadata, input limits,
approval tokens, transition reasons and error codes.
"""

from typing import Final

# =============================================================================
# SERVICE IDENTIFICATION
# =============================================================================

SERVICE_NAME: Final[str] = "consent-ledger"
SERVICE_VERSION: Final[str] = "0.1.0"

# =============================================================================
# INPUT LIMITS
# =============================================================================

class InputLimits:
    """Bounds applied at the validation boundary"""
    USER_ID_MAX_LENGTH: Final[int] = 500
    PURPOSE_MAX_LENGTH: Final[int] = 500
    DATA_TYPE_MAX_LENGTH: Final[int] = 200
    MAX_DATA_TYPES: Final[int] = 100


# =============================================================================
# APPROVAL TOKENS
# =============================================================================

class TokenDefaults:
    """Approval token parameters"""
    TTL_HOURS: Final[int] = 24
    TOKEN_BYTES: Final[int] = 32          # 256 bits of entropy
    MIN_TOKEN_BYTES: Final[int] = 16      # 128 bits


# =============================================================================
# TRANSITION REASONS
# =============================================================================

class TransitionReasons:
    """Values recorded in audit details for side-effect transitions"""
    SUPERSEDED: Final[str] = "SUPERSEDED"
    REJECTED_BY_USER: Final[str] = "REJECTED_BY_USER"
    SIBLING_REJECTED: Final[str] = "SIBLING_REJECTED"
    VALID_UNTIL_ELAPSED: Final[str] = "VALID_UNTIL_ELAPSED"
    APPROVAL_WINDOW_ELAPSED: Final[str] = "APPROVAL_WINDOW_ELAPSED"


class TransitionChannels:
    """Which caller drove a revoke or expiry"""
    DIRECT: Final[str] = "DIRECT"
    SEMANTIC: Final[str] = "SEMANTIC"
    APPROVAL: Final[str] = "APPROVAL"
    AUTO_APPROVE: Final[str] = "AUTO_APPROVE"
    READ: Final[str] = "READ"
    PROCESSING: Final[str] = "PROCESSING"
    ON_DEMAND: Final[str] = "ON_DEMAND"
    SCHEDULED_JOB: Final[str] = "SCHEDULED_JOB"


# =============================================================================
# ERROR CODES
# =============================================================================

class ErrorCodes:
    """Standardized error codes for the consent ledger"""
    LEDGER_ERROR: Final[str] = "CONSENT_LEDGER_ERROR"
    INVALID_INPUT: Final[str] = "INVALID_INPUT"
    NOT_FOUND: Final[str] = "NOT_FOUND"
    STORAGE_FAILURE: Final[str] = "STORAGE_FAILURE"
    AUDIT_CHAIN_BROKEN: Final[str] = "AUDIT_CHAIN_BROKEN"
