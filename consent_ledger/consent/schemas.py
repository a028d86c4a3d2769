"""
Request schemas for the consent ledger

Each inbound shape is validated once, here, into an immutable object.
Unknown fields are rejected; both snake_case and camelCase keys are accepted.
"""

from datetime import datetime
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..constants import InputLimits
from ..policy.engine import PolicyRequest
from ..utils.clock import ensure_utc
from ..utils.validators import strip_null_bytes


class _StrictRequest(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    @field_validator("user_id", "purpose", mode="before", check_fields=False)
    @classmethod
    def _sanitize_text(cls, value):
        if isinstance(value, str):
            value = strip_null_bytes(value)
            if not value.strip():
                raise ValueError("cannot be empty")
        return value


class CreateConsentRequest(_StrictRequest):
    user_id: str = Field(..., min_length=1, max_length=InputLimits.USER_ID_MAX_LENGTH)
    purpose: str = Field(..., min_length=1, max_length=InputLimits.PURPOSE_MAX_LENGTH)
    data_types: Tuple[str, ...] = Field(..., min_length=1, max_length=InputLimits.MAX_DATA_TYPES)
    valid_until: datetime

    @field_validator("data_types")
    @classmethod
    def _check_data_types(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        for item in value:
            if not item.strip():
                raise ValueError("data types cannot be empty strings")
        return value

    @field_validator("valid_until")
    @classmethod
    def _normalize_valid_until(cls, value: datetime) -> datetime:
        # Whether it lies in the future is decided by the store against its own clock
        return ensure_utc(value)


class RevokeSemanticRequest(_StrictRequest):
    user_id: str = Field(..., min_length=1, max_length=InputLimits.USER_ID_MAX_LENGTH)
    purpose: str = Field(..., min_length=1, max_length=InputLimits.PURPOSE_MAX_LENGTH)


class ProcessRequest(_StrictRequest):
    """
    A request to process a user's data. An empty ``data_types`` is accepted
    here so that the decision engine can deny (and the ledger record) it.
    """
    user_id: str = Field(..., min_length=1, max_length=InputLimits.USER_ID_MAX_LENGTH)
    purpose: str = Field(..., min_length=1, max_length=InputLimits.PURPOSE_MAX_LENGTH)
    data_types: Tuple[str, ...] = Field(default=(), max_length=InputLimits.MAX_DATA_TYPES)
    version: Optional[int] = Field(default=None, ge=1)

    def to_policy_request(self) -> PolicyRequest:
        return PolicyRequest(
            purpose=self.purpose,
            data_types=self.data_types,
            version=self.version,
        )
