"""
Hash-chained audit ledger
Append-only, tamper-evident record of every consent transition and policy decision
"""

from datetime import datetime, UTC
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import JSON, Column, Integer, String
from sqlalchemy.orm import Session

from ..crypto.hash import chain_hash, normalize_payload
from ..database import Base, Database, UTCDateTime
from ..utils.clock import Clock, utc_now
from ..utils.ids import generate_audit_id

logger = structlog.get_logger(__name__)


class AuditEventType(str, Enum):
    """Types of ledger events"""
    CONSENT_REQUESTED = "CONSENT_REQUESTED"
    CONSENT_APPROVED = "CONSENT_APPROVED"
    CONSENT_REJECTED = "CONSENT_REJECTED"
    CONSENT_CREATED = "CONSENT_CREATED"
    CONSENT_REVOKED = "CONSENT_REVOKED"
    CONSENT_EXPIRED = "CONSENT_EXPIRED"
    PROCESSING_ALLOWED = "PROCESSING_ALLOWED"
    PROCESSING_DENIED = "PROCESSING_DENIED"


class AuditLogDB(Base):
    """SQLAlchemy model for audit ledger entries"""
    __tablename__ = "audit_logs"

    audit_id = Column(String(64), primary_key=True)
    # Gap-free insertion counter; the unique constraint turns a forked append into a conflict
    sequence = Column(Integer, nullable=False, unique=True)
    event_type = Column(String(32), nullable=False, index=True)
    consent_id = Column(String(64), index=True)
    user_id = Column(String(500), nullable=False, index=True)
    timestamp = Column(UTCDateTime, nullable=False, index=True)
    details = Column(JSON, nullable=False)
    prev_hash = Column(String(64))
    hash = Column(String(64), nullable=False, unique=True)


def format_timestamp(timestamp: datetime) -> str:
    """Canonical timestamp text used inside the hash"""
    return timestamp.astimezone(UTC).isoformat(timespec="microseconds")


def compute_entry_hash(
    prev_hash: Optional[str],
    audit_id: str,
    event_type: str,
    consent_id: Optional[str],
    user_id: str,
    timestamp: datetime,
    details: Dict[str, Any]
) -> str:
    """H(prev_hash || audit_id || event_type || consent_id || user_id || timestamp || canonical(details))"""
    return chain_hash(prev_hash, [
        audit_id,
        event_type,
        consent_id or "",
        user_id,
        format_timestamp(timestamp),
        details,
    ])


class AuditEntry(BaseModel):
    """Individual ledger entry"""
    model_config = ConfigDict(frozen=True)

    audit_id: str
    sequence: int
    event_type: AuditEventType
    consent_id: Optional[str] = None
    user_id: str
    timestamp: datetime
    details: Dict[str, Any] = Field(default_factory=dict)
    prev_hash: Optional[str] = None
    hash: str

    def compute_hash(self) -> str:
        """Recompute this entry's digest from its own fields"""
        return compute_entry_hash(
            self.prev_hash,
            self.audit_id,
            self.event_type.value,
            self.consent_id,
            self.user_id,
            self.timestamp,
            self.details,
        )


class ChainVerification(BaseModel):
    """
    Outcome of walking the chain from its first entry.

    When ``valid`` is False, the entry at ``first_invalid_index`` and every
    entry after it are untrusted.
    """
    valid: bool
    entries_checked: int
    first_invalid_index: Optional[int] = None
    first_invalid_audit_id: Optional[str] = None
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.valid


def verify_chain(entries: List[AuditEntry]) -> ChainVerification:
    """
    Verify a sequence of entries in chain order.

    Reports the first divergent entry: a broken ``prev_hash`` link (insertion,
    deletion, reordering), a sequence gap, or a stored hash that no longer
    matches the entry's fields (mutation).
    """
    previous_hash: Optional[str] = None
    expected_sequence: Optional[int] = None

    for index, entry in enumerate(entries):
        reason = None
        if entry.prev_hash != previous_hash:
            reason = "prev_hash_mismatch"
        elif expected_sequence is not None and entry.sequence != expected_sequence:
            reason = "sequence_gap"
        elif entry.compute_hash() != entry.hash:
            reason = "hash_mismatch"

        if reason:
            logger.warning("Audit chain divergence",
                           index=index, audit_id=entry.audit_id, reason=reason)
            return ChainVerification(
                valid=False,
                entries_checked=index + 1,
                first_invalid_index=index,
                first_invalid_audit_id=entry.audit_id,
                reason=reason,
            )

        previous_hash = entry.hash
        expected_sequence = entry.sequence + 1

    return ChainVerification(valid=True, entries_checked=len(entries))


class AuditLedger:
    """
    Append-only ledger with one logical tail.

    ``append`` runs in the caller's session so that a state change and the
    entry documenting it commit or roll back together. Appends serialize on
    the tail: the tail row is read FOR UPDATE where the dialect supports it,
    and a concurrent writer that slips past loses on the unique ``sequence``
    constraint and has its whole transaction replayed.
    """

    def __init__(self, database: Database, clock: Optional[Clock] = None):
        self.database = database
        self.clock = clock or utc_now
        self.database.create_schema()

    def append(
        self,
        session: Session,
        event_type: AuditEventType,
        user_id: str,
        consent_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> AuditEntry:
        """Link a new entry to the current tail and stage it in ``session``"""
        tail = (
            session.query(AuditLogDB)
            .order_by(AuditLogDB.sequence.desc())
            .with_for_update()
            .first()
        )

        timestamp = self.clock()
        if tail is not None and tail.timestamp > timestamp:
            # Keep timestamp order identical to chain order despite clock steps
            timestamp = tail.timestamp

        prev_hash = tail.hash if tail is not None else None
        sequence = tail.sequence + 1 if tail is not None else 1
        payload = normalize_payload(details or {})
        audit_id = generate_audit_id()

        entry = AuditEntry(
            audit_id=audit_id,
            sequence=sequence,
            event_type=event_type,
            consent_id=consent_id,
            user_id=user_id,
            timestamp=timestamp,
            details=payload,
            prev_hash=prev_hash,
            hash=compute_entry_hash(
                prev_hash, audit_id, event_type.value, consent_id, user_id, timestamp, payload
            ),
        )

        session.add(AuditLogDB(
            audit_id=entry.audit_id,
            sequence=entry.sequence,
            event_type=entry.event_type.value,
            consent_id=entry.consent_id,
            user_id=entry.user_id,
            timestamp=entry.timestamp,
            details=entry.details,
            prev_hash=entry.prev_hash,
            hash=entry.hash,
        ))
        session.flush()

        logger.debug("Audit entry appended",
                     audit_id=entry.audit_id,
                     sequence=entry.sequence,
                     event_type=event_type.value,
                     consent_id=consent_id,
                     hash=entry.hash[:16])
        return entry

    @staticmethod
    def _from_db_model(row: AuditLogDB) -> AuditEntry:
        return AuditEntry(
            audit_id=row.audit_id,
            sequence=row.sequence,
            event_type=AuditEventType(row.event_type),
            consent_id=row.consent_id,
            user_id=row.user_id,
            timestamp=row.timestamp,
            details=row.details or {},
            prev_hash=row.prev_hash,
            hash=row.hash,
        )

    def read_all(self) -> List[AuditEntry]:
        """All entries in ascending timestamp (and therefore chain) order"""
        with self.database.SessionLocal() as session:
            rows = (
                session.query(AuditLogDB)
                .order_by(AuditLogDB.timestamp.asc(), AuditLogDB.sequence.asc())
                .all()
            )
            return [self._from_db_model(row) for row in rows]

    def get_entries(
        self,
        user_id: Optional[str] = None,
        consent_id: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[AuditEntry]:
        """Filtered history lookup, oldest first"""
        with self.database.SessionLocal() as session:
            query = session.query(AuditLogDB)
            if user_id:
                query = query.filter(AuditLogDB.user_id == user_id)
            if consent_id:
                query = query.filter(AuditLogDB.consent_id == consent_id)
            if event_type:
                query = query.filter(AuditLogDB.event_type == event_type.value)
            if start_time:
                query = query.filter(AuditLogDB.timestamp >= start_time)
            if end_time:
                query = query.filter(AuditLogDB.timestamp <= end_time)

            query = query.order_by(AuditLogDB.timestamp.asc(), AuditLogDB.sequence.asc())
            if limit:
                query = query.limit(limit)
            return [self._from_db_model(row) for row in query.all()]

    def verify(self) -> ChainVerification:
        """Verify the full stored chain"""
        result = verify_chain(self.read_all())
        if result.valid:
            logger.info("Audit integrity verified", event_count=result.entries_checked)
        return result

    def export_audit_trail(
        self,
        user_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Export audit trail for compliance; integrity is judged on the whole chain"""
        entries = self.get_entries(user_id=user_id, start_time=start_time, end_time=end_time)
        verification = self.verify()

        return {
            "export_timestamp": self.clock().isoformat(),
            "user_id": user_id,
            "start_time": start_time.isoformat() if start_time else None,
            "end_time": end_time.isoformat() if end_time else None,
            "event_count": len(entries),
            "events": [entry.model_dump(mode="json") for entry in entries],
            "integrity": verification.model_dump(),
        }
