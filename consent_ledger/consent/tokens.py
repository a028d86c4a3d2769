"""
Approval token issuer
Unguessable, time-bounded tokens for human-in-the-loop consent approval
"""

from datetime import datetime, timedelta
from typing import Optional, Tuple

from ..config import get_ledger_config
from ..constants import TokenDefaults
from ..exceptions import InvalidInputError
from ..utils.ids import generate_approval_token


class ApprovalTokenIssuer:
    """Issues approval tokens; single use is enforced by the store clearing them on transition"""

    def __init__(self, ttl_hours: Optional[int] = None,
                 token_bytes: int = TokenDefaults.TOKEN_BYTES):
        if ttl_hours is None:
            ttl_hours = get_ledger_config().approval_token_ttl_hours
        if ttl_hours < 1:
            raise InvalidInputError("Approval token TTL must be at least one hour",
                                    field="approval_token_ttl_hours")
        if token_bytes < TokenDefaults.MIN_TOKEN_BYTES:
            raise InvalidInputError("Approval tokens need at least 128 bits of entropy",
                                    field="token_bytes")

        self.ttl = timedelta(hours=ttl_hours)
        self.token_bytes = token_bytes

    def issue(self) -> str:
        return generate_approval_token(self.token_bytes)

    def expiry_from(self, issued_at: datetime) -> datetime:
        return issued_at + self.ttl

    def issue_with_expiry(self, issued_at: datetime) -> Tuple[str, datetime]:
        """Token plus the instant after which it can no longer approve or reject"""
        return self.issue(), self.expiry_from(issued_at)
