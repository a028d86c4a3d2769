"""
Custom Exceptions for the consent ledger

Invalid input and missing records are exceptional. Lifecycle conflicts
(not active, unknown token, no effect) are not: they come back as
TransitionOutcome values on a TransitionResult.
"""

from typing import Optional, Dict, Any

from .constants import ErrorCodes


class ConsentLedgerError(Exception):
    """
    Base exception for all consent ledger errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        error_code: str = ErrorCodes.LEDGER_ERROR,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses"""
        result: Dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class InvalidInputError(ConsentLedgerError):
    """Raised when arguments are malformed or out of range; nothing is recorded"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, ErrorCodes.INVALID_INPUT, details)


class ConsentNotFoundError(ConsentLedgerError):
    """Raised when no consent exists with the given identifier"""

    def __init__(self, consent_id: str):
        super().__init__(
            message=f"Consent not found: {consent_id}",
            error_code=ErrorCodes.NOT_FOUND,
            details={"consent_id": consent_id}
        )


class StorageFailureError(ConsentLedgerError):
    """Raised when a transaction aborts; state change and audit entry were rolled back together"""

    def __init__(
        self,
        operation: str,
        reason: Optional[str] = None
    ):
        details: Dict[str, Any] = {"operation": operation}
        if reason:
            details["reason"] = reason
        super().__init__(
            message=f"Storage failure during {operation}",
            error_code=ErrorCodes.STORAGE_FAILURE,
            details=details
        )


class AuditChainError(ConsentLedgerError):
    """Raised when the audit hash chain does not verify"""

    def __init__(
        self,
        audit_id: Optional[str] = None,
        index: Optional[int] = None,
        reason: Optional[str] = None
    ):
        details: Dict[str, Any] = {}
        if audit_id:
            details["audit_id"] = audit_id
        if index is not None:
            details["index"] = index
        if reason:
            details["reason"] = reason
        super().__init__(
            message="Audit chain verification failed",
            error_code=ErrorCodes.AUDIT_CHAIN_BROKEN,
            details=details
        )
