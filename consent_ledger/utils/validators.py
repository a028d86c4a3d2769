"""
Input validators for the consent ledger

Every mutating store operation passes its raw arguments through these
before opening a transaction, so invalid input never reaches storage.
"""

from datetime import datetime
from typing import Any, Iterable, List, Optional

from ..constants import InputLimits
from ..exceptions import InvalidInputError
from .clock import ensure_utc


def strip_null_bytes(value: str) -> str:
    """Remove NUL characters that some drivers silently truncate on"""
    return value.replace("\0", "")


def _validate_text(value: Any, field_name: str, max_length: int) -> str:
    if not isinstance(value, str):
        raise InvalidInputError(f"{field_name} must be a string", field=field_name)

    value = strip_null_bytes(value)
    if not value.strip():
        raise InvalidInputError(f"{field_name} cannot be empty", field=field_name)

    if len(value) > max_length:
        raise InvalidInputError(
            f"{field_name} cannot exceed {max_length} characters",
            field=field_name
        )
    return value


def validate_user_id(user_id: Any, field_name: str = "user_id") -> str:
    """
    Validate a subject identifier.

    Raises:
        InvalidInputError: If the value is missing, not a string, or too long
    """
    return _validate_text(user_id, field_name, InputLimits.USER_ID_MAX_LENGTH)


def validate_purpose(purpose: Any, field_name: str = "purpose") -> str:
    """
    Validate a processing purpose. Purposes are compared case-sensitively,
    so no normalization beyond NUL stripping is applied.
    """
    return _validate_text(purpose, field_name, InputLimits.PURPOSE_MAX_LENGTH)


def validate_data_types(
    data_types: Any,
    field_name: str = "data_types",
    allow_empty: bool = False
) -> List[str]:
    """
    Validate a collection of data type names.

    Returns:
        Deduplicated list preserving first-seen order
    """
    if isinstance(data_types, (str, bytes)) or not isinstance(data_types, Iterable):
        raise InvalidInputError(f"{field_name} must be a list of strings", field=field_name)

    result: List[str] = []
    for item in data_types:
        item = _validate_text(item, field_name, InputLimits.DATA_TYPE_MAX_LENGTH)
        if item not in result:
            result.append(item)

    if not result and not allow_empty:
        raise InvalidInputError(f"{field_name} cannot be empty", field=field_name)

    if len(result) > InputLimits.MAX_DATA_TYPES:
        raise InvalidInputError(
            f"{field_name} cannot contain more than {InputLimits.MAX_DATA_TYPES} entries",
            field=field_name
        )
    return result


def validate_valid_until(
    valid_until: Any,
    now: datetime,
    field_name: str = "valid_until"
) -> datetime:
    """Validate that an expiry timestamp lies strictly in the future"""
    if not isinstance(valid_until, datetime):
        raise InvalidInputError(f"{field_name} must be a datetime", field=field_name)

    valid_until = ensure_utc(valid_until)
    if valid_until <= now:
        raise InvalidInputError(f"{field_name} must be a future date", field=field_name)
    return valid_until


def validate_token(token: Any, field_name: str = "token") -> Optional[str]:
    """Return the token if it is plausibly well-formed, None otherwise"""
    if not isinstance(token, str):
        return None
    token = token.strip()
    if not token or len(token) > 256:
        return None
    return token
