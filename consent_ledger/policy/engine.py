"""
Policy decision engine for the consent ledger
Pure evaluation of a processing request against a resolved consent
"""

from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict

from ..consent.models import Consent, ConsentStatus


class PolicyEffect(str, Enum):
    """Policy evaluation effects"""
    ALLOW = "allow"
    DENY = "deny"


class DenyReason(str, Enum):
    """Stable, machine-distinguishable denial tokens"""
    CONSENT_NOT_ACTIVE = "ConsentNotActive"
    STALE_VERSION = "StaleVersion"
    PURPOSE_MISMATCH = "PurposeMismatch"
    NO_DATA_TYPES_REQUESTED = "NoDataTypesRequested"
    DATA_TYPE_NOT_CONSENTED = "DataTypeNotConsented"
    # Raised by the orchestrator before evaluation
    NO_ACTIVE_CONSENT = "NoActiveConsent"
    CONSENT_EXPIRED = "ConsentExpired"


class PolicyRequest(BaseModel):
    """What a caller wants to do with the data"""
    model_config = ConfigDict(frozen=True)

    purpose: str
    data_types: Tuple[str, ...] = ()
    version: Optional[int] = None


class PolicyDecision(BaseModel):
    """Allow, or Deny with a reason"""
    model_config = ConfigDict(frozen=True)

    effect: PolicyEffect
    reason: Optional[DenyReason] = None
    offending_data_type: Optional[str] = None

    @classmethod
    def allow(cls) -> "PolicyDecision":
        return cls(effect=PolicyEffect.ALLOW)

    @classmethod
    def deny(cls, reason: DenyReason, offending_data_type: Optional[str] = None) -> "PolicyDecision":
        return cls(effect=PolicyEffect.DENY, reason=reason, offending_data_type=offending_data_type)

    @property
    def allowed(self) -> bool:
        return self.effect == PolicyEffect.ALLOW

    @property
    def reason_code(self) -> Optional[str]:
        """Reason token, e.g. ``DataTypeNotConsented(ssn)``"""
        if self.reason is None:
            return None
        if self.offending_data_type is not None:
            return f"{self.reason.value}({self.offending_data_type})"
        return self.reason.value


def evaluate(consent: Consent, request: PolicyRequest) -> PolicyDecision:
    """
    Evaluate ``request`` against ``consent``, short-circuiting at the first failure:

    1. consent must be ACTIVE
    2. a pinned request version must equal the consent version
    3. purpose must match exactly (case-sensitive)
    4. at least one data type must be requested
    5. every requested data type must be consented

    Expiry is not checked here; callers resolve it before evaluating.
    """
    if consent.status != ConsentStatus.ACTIVE:
        return PolicyDecision.deny(DenyReason.CONSENT_NOT_ACTIVE)

    if request.version is not None and request.version != consent.version:
        return PolicyDecision.deny(DenyReason.STALE_VERSION)

    if request.purpose != consent.purpose:
        return PolicyDecision.deny(DenyReason.PURPOSE_MISMATCH)

    if not request.data_types:
        return PolicyDecision.deny(DenyReason.NO_DATA_TYPES_REQUESTED)

    for data_type in request.data_types:
        if data_type not in consent.data_types:
            return PolicyDecision.deny(DenyReason.DATA_TYPE_NOT_CONSENTED, data_type)

    return PolicyDecision.allow()
