"""
Consent data models for the consent ledger
Versioned consent records, lifecycle states and transition outcomes
"""

from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_serializer


class ConsentStatus(str, Enum):
    """Consent lifecycle status"""
    REQUESTED = "REQUESTED"
    ACTIVE = "ACTIVE"
    REJECTED = "REJECTED"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"


ALLOWED_TRANSITIONS: Dict[ConsentStatus, Set[ConsentStatus]] = {
    ConsentStatus.REQUESTED: {ConsentStatus.ACTIVE, ConsentStatus.REJECTED},
    ConsentStatus.ACTIVE: {ConsentStatus.REVOKED, ConsentStatus.EXPIRED},
}

TERMINAL_STATUSES: FrozenSet[ConsentStatus] = frozenset({
    ConsentStatus.REJECTED,
    ConsentStatus.REVOKED,
    ConsentStatus.EXPIRED,
})


def can_transition(current: ConsentStatus, target: ConsentStatus) -> bool:
    """Whether the lifecycle permits moving from ``current`` to ``target``"""
    return target in ALLOWED_TRANSITIONS.get(current, set())


def make_consent_group_id(user_id: str, purpose: str) -> str:
    """Stable identifier shared by every version of one (user, purpose) pair"""
    return f"{user_id}:{purpose}"


class Consent(BaseModel):
    """One immutable version of a user's consent for a purpose"""
    model_config = ConfigDict(frozen=True)

    consent_id: str
    consent_group_id: str
    version: int = Field(..., ge=1)
    user_id: str
    purpose: str
    data_types: FrozenSet[str]
    valid_until: datetime
    status: ConsentStatus

    # Present only while REQUESTED
    approval_token: Optional[str] = None
    approval_expires_at: Optional[datetime] = None

    created_at: datetime
    updated_at: datetime

    @field_serializer("data_types")
    def _serialize_data_types(self, data_types: FrozenSet[str]) -> List[str]:
        return sorted(data_types)

    def is_elapsed(self, now: datetime) -> bool:
        """validUntil has passed as of ``now``"""
        return self.valid_until <= now

    def is_authoritative(self, now: datetime) -> bool:
        """ACTIVE and not yet elapsed"""
        return self.status == ConsentStatus.ACTIVE and not self.is_elapsed(now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def public_view(self) -> dict:
        """Serialized form without the approval secret"""
        return self.model_dump(mode="json", exclude={"approval_token"})


class TransitionOutcome(str, Enum):
    """Defined results of a lifecycle operation; only APPLIED changed state"""
    APPLIED = "APPLIED"
    NOT_ACTIVE = "NOT_ACTIVE"
    TOKEN_NOT_FOUND = "TOKEN_NOT_FOUND"
    NO_EFFECT = "NO_EFFECT"
    NO_ACTIVE_CONSENT = "NO_ACTIVE_CONSENT"


class TransitionResult(BaseModel):
    """
    Result of a lifecycle operation.

    ``consent`` is the row the caller addressed (in its state after the call,
    when known); ``side_effects`` lists sibling versions the same transaction
    moved to keep a single ACTIVE per group.
    """
    model_config = ConfigDict(frozen=True)

    outcome: TransitionOutcome
    consent: Optional[Consent] = None
    side_effects: List[Consent] = Field(default_factory=list)

    @property
    def applied(self) -> bool:
        return self.outcome == TransitionOutcome.APPLIED
