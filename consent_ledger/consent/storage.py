"""
Consent storage and lifecycle state machine
Versioned consent records on SQLAlchemy with conditional, audited transitions
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import (
    JSON, CheckConstraint, Column, Index, Integer, String, UniqueConstraint, or_, text
)
from sqlalchemy.orm import Session

from ..audit.ledger import AuditEventType, AuditLedger
from ..config import LedgerConfig, get_ledger_config
from ..constants import TransitionChannels, TransitionReasons
from ..database import Base, Database, UTCDateTime
from ..exceptions import ConsentNotFoundError
from ..utils.clock import Clock, utc_now
from ..utils.ids import generate_consent_id
from ..utils.validators import (
    validate_data_types,
    validate_purpose,
    validate_token,
    validate_user_id,
    validate_valid_until,
)
from .models import (
    Consent,
    ConsentStatus,
    TransitionOutcome,
    TransitionResult,
    can_transition,
    make_consent_group_id,
)
from .tokens import ApprovalTokenIssuer

logger = structlog.get_logger(__name__)

_ACTIVE_ONLY = text("status = 'ACTIVE'")


class ConsentRecordDB(Base):
    """SQLAlchemy model for consent versions"""
    __tablename__ = "consents"

    consent_id = Column(String(64), primary_key=True)
    consent_group_id = Column(String(1024), nullable=False)
    version = Column(Integer, nullable=False)
    user_id = Column(String(500), nullable=False, index=True)
    purpose = Column(String(500), nullable=False)
    data_types = Column(JSON, nullable=False)  # sorted list
    valid_until = Column(UTCDateTime, nullable=False)
    status = Column(String(16), nullable=False)

    approval_token = Column(String(128), unique=True)
    approval_expires_at = Column(UTCDateTime)

    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("consent_group_id", "version", name="uq_consents_group_version"),
        Index("ix_consents_group_status_version", "consent_group_id", "status", "version"),
        Index(
            "uq_consents_one_active_per_group",
            "consent_group_id",
            unique=True,
            sqlite_where=_ACTIVE_ONLY,
            postgresql_where=_ACTIVE_ONLY,
        ),
        CheckConstraint("version > 0", name="ck_consents_version_positive"),
    )


class _TransitionRace(Exception):
    """A conditional update matched nothing after its row was located; roll back the unit"""


class ConsentStore:
    """
    Transactional repository and state machine for consent versions.

    Every mutating operation runs in one transaction that also appends the
    audit entry for each status change it makes. Status changes are
    conditional updates (``WHERE status = <expected>``), so a caller that
    loses a race observes a defined outcome instead of a double transition.
    """

    def __init__(
        self,
        database: Optional[Database] = None,
        ledger: Optional[AuditLedger] = None,
        token_issuer: Optional[ApprovalTokenIssuer] = None,
        clock: Optional[Clock] = None,
        config: Optional[LedgerConfig] = None
    ):
        self.config = config or get_ledger_config()
        self.database = database or Database(self.config.database_url)
        self.clock = clock or utc_now
        self.ledger = ledger or AuditLedger(self.database, clock=self.clock)
        self.token_issuer = token_issuer or ApprovalTokenIssuer(self.config.approval_token_ttl_hours)

        self.database.create_schema()

    def now(self) -> datetime:
        return self.clock()

    @staticmethod
    def _from_db_model(row: ConsentRecordDB) -> Consent:
        """Convert database model to Consent"""
        return Consent(
            consent_id=row.consent_id,
            consent_group_id=row.consent_group_id,
            version=row.version,
            user_id=row.user_id,
            purpose=row.purpose,
            data_types=frozenset(row.data_types or []),
            valid_until=row.valid_until,
            status=ConsentStatus(row.status),
            approval_token=row.approval_token,
            approval_expires_at=row.approval_expires_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    # -------------------------------------------------------------------------
    # In-session building blocks
    # -------------------------------------------------------------------------

    def _apply_transition(
        self,
        session: Session,
        consent_id: str,
        source: ConsentStatus,
        target: ConsentStatus,
        now: datetime,
        event_type: AuditEventType,
        details: Optional[Dict[str, Any]] = None,
        conditions: Iterable[Any] = ()
    ) -> Optional[Consent]:
        """
        Move one row from ``source`` to ``target`` if it is still in ``source``
        (and matches ``conditions``), then append exactly one audit entry.

        Returns None when the conditional update matched nothing.
        """
        if not can_transition(source, target):
            raise ValueError(f"Illegal consent transition {source.value} -> {target.value}")

        values: Dict[str, Any] = {"status": target.value, "updated_at": now}
        if source == ConsentStatus.REQUESTED:
            values["approval_token"] = None
            values["approval_expires_at"] = None

        matched = (
            session.query(ConsentRecordDB)
            .filter(
                ConsentRecordDB.consent_id == consent_id,
                ConsentRecordDB.status == source.value,
                *conditions,
            )
            .update(values, synchronize_session=False)
        )
        if matched == 0:
            return None

        row = session.get(ConsentRecordDB, consent_id, populate_existing=True)
        consent = self._from_db_model(row)

        self.ledger.append(
            session,
            event_type,
            user_id=consent.user_id,
            consent_id=consent.consent_id,
            details={
                "purpose": consent.purpose,
                "version": consent.version,
                "from_status": source.value,
                "to_status": target.value,
                **(details or {}),
            },
        )

        logger.info("Consent transitioned",
                    consent_id=consent.consent_id,
                    user_id=consent.user_id,
                    version=consent.version,
                    from_status=source.value,
                    to_status=target.value)
        return consent

    def _group_rows(
        self,
        session: Session,
        group_id: str,
        status: ConsentStatus,
        exclude_consent_id: Optional[str] = None
    ) -> List[str]:
        query = (
            session.query(ConsentRecordDB)
            .filter(
                ConsentRecordDB.consent_group_id == group_id,
                ConsentRecordDB.status == status.value,
            )
        )
        if exclude_consent_id:
            query = query.filter(ConsentRecordDB.consent_id != exclude_consent_id)
        rows = query.order_by(ConsentRecordDB.version.asc()).with_for_update().all()
        return [row.consent_id for row in rows]

    def _reject_pending_in_group(
        self,
        session: Session,
        group_id: str,
        now: datetime,
        exclude_consent_id: str,
        details: Dict[str, Any]
    ) -> List[Consent]:
        rejected = []
        for consent_id in self._group_rows(session, group_id, ConsentStatus.REQUESTED, exclude_consent_id):
            consent = self._apply_transition(
                session, consent_id, ConsentStatus.REQUESTED, ConsentStatus.REJECTED,
                now, AuditEventType.CONSENT_REJECTED, details,
            )
            if consent is not None:
                rejected.append(consent)
        return rejected

    def _supersede_group(
        self,
        session: Session,
        group_id: str,
        now: datetime,
        new_consent_id: str,
        channel: str
    ) -> List[Consent]:
        """Revoke the group's ACTIVE version and reject its other pending requests"""
        side_effects = []
        for consent_id in self._group_rows(session, group_id, ConsentStatus.ACTIVE, new_consent_id):
            consent = self._apply_transition(
                session, consent_id, ConsentStatus.ACTIVE, ConsentStatus.REVOKED,
                now, AuditEventType.CONSENT_REVOKED,
                {
                    "revoked_via": channel,
                    "reason": TransitionReasons.SUPERSEDED,
                    "superseded_by": new_consent_id,
                },
            )
            if consent is not None:
                side_effects.append(consent)

        side_effects.extend(self._reject_pending_in_group(
            session, group_id, now, new_consent_id,
            {
                "via": channel,
                "reason": TransitionReasons.SUPERSEDED,
                "superseded_by": new_consent_id,
            },
        ))
        return side_effects

    def _find_pending_by_token(self, session: Session, token: str, now: datetime) -> Optional[ConsentRecordDB]:
        return (
            session.query(ConsentRecordDB)
            .filter(
                ConsentRecordDB.approval_token == token,
                ConsentRecordDB.status == ConsentStatus.REQUESTED.value,
                ConsentRecordDB.approval_expires_at > now,
            )
            .with_for_update()
            .first()
        )

    def active_consent_for_update(self, session: Session, user_id: str, purpose: str) -> Optional[Consent]:
        """
        The group's ACTIVE version, elapsed or not, locked for the rest of the
        caller's transaction. Callers decide what to do with an elapsed one.
        """
        row = (
            session.query(ConsentRecordDB)
            .filter(
                ConsentRecordDB.consent_group_id == make_consent_group_id(user_id, purpose),
                ConsentRecordDB.status == ConsentStatus.ACTIVE.value,
            )
            .order_by(ConsentRecordDB.version.desc())
            .with_for_update()
            .first()
        )
        return self._from_db_model(row) if row is not None else None

    def expire_within(self, session: Session, consent_id: str, now: datetime, via: str) -> Optional[Consent]:
        """ACTIVE -> EXPIRED in the caller's transaction, only if validUntil has elapsed"""
        return self._apply_transition(
            session, consent_id, ConsentStatus.ACTIVE, ConsentStatus.EXPIRED,
            now, AuditEventType.CONSENT_EXPIRED,
            {"expired_via": via},
            conditions=(ConsentRecordDB.valid_until <= now,),
        )

    # -------------------------------------------------------------------------
    # Lifecycle operations
    # -------------------------------------------------------------------------

    def create(
        self,
        user_id: str,
        purpose: str,
        data_types: Iterable[str],
        valid_until: datetime,
        auto_approve: Optional[bool] = None
    ) -> Consent:
        """
        Create the next version for (user_id, purpose).

        The group's rows are locked before the version is assigned as
        max(existing) + 1, so concurrent creators queue behind each other.
        A creator racing on a still-empty group fails on the (group, version)
        unique constraint and is replayed.

        Raises:
            InvalidInputError: If any argument is malformed or valid_until is not in the future
        """
        user_id = validate_user_id(user_id)
        purpose = validate_purpose(purpose)
        data_types = sorted(validate_data_types(data_types))
        valid_until = validate_valid_until(valid_until, self.now())
        if auto_approve is None:
            auto_approve = self.config.auto_approve

        group_id = make_consent_group_id(user_id, purpose)

        def work(session: Session) -> Consent:
            now = self.now()
            locked_versions = (
                session.query(ConsentRecordDB.version)
                .filter(ConsentRecordDB.consent_group_id == group_id)
                .with_for_update()
                .all()
            )
            current_max = max((v for (v,) in locked_versions), default=0)
            consent_id = generate_consent_id()

            if auto_approve:
                self._supersede_group(session, group_id, now, consent_id, TransitionChannels.AUTO_APPROVE)
                status = ConsentStatus.ACTIVE
                token, token_expires_at = None, None
                event_type = AuditEventType.CONSENT_CREATED
            else:
                status = ConsentStatus.REQUESTED
                token, token_expires_at = self.token_issuer.issue_with_expiry(now)
                event_type = AuditEventType.CONSENT_REQUESTED

            row = ConsentRecordDB(
                consent_id=consent_id,
                consent_group_id=group_id,
                version=current_max + 1,
                user_id=user_id,
                purpose=purpose,
                data_types=data_types,
                valid_until=valid_until,
                status=status.value,
                approval_token=token,
                approval_expires_at=token_expires_at,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            consent = self._from_db_model(row)

            self.ledger.append(
                session,
                event_type,
                user_id=user_id,
                consent_id=consent_id,
                details={
                    "purpose": purpose,
                    "data_types": data_types,
                    "valid_until": valid_until.isoformat(),
                    "version": consent.version,
                    "approval_required": not auto_approve,
                },
            )
            return consent

        consent = self.database.run_in_transaction(work, "create_consent")
        logger.info("Consent created",
                    consent_id=consent.consent_id,
                    user_id=user_id,
                    version=consent.version,
                    status=consent.status.value)
        return consent

    def approve_by_token(self, token: str) -> TransitionResult:
        """
        REQUESTED -> ACTIVE for the row holding ``token``.

        In the same transaction every other pending request of the group is
        rejected and a previously ACTIVE version is revoked. A request whose
        validUntil has already elapsed is rejected instead (NO_EFFECT).
        """
        token = validate_token(token)
        if token is None:
            return TransitionResult(outcome=TransitionOutcome.TOKEN_NOT_FOUND)

        def work(session: Session) -> TransitionResult:
            now = self.now()
            row = self._find_pending_by_token(session, token, now)
            if row is None:
                return TransitionResult(outcome=TransitionOutcome.TOKEN_NOT_FOUND)

            consent_id, group_id = row.consent_id, row.consent_group_id

            if row.valid_until <= now:
                rejected = self._apply_transition(
                    session, consent_id, ConsentStatus.REQUESTED, ConsentStatus.REJECTED,
                    now, AuditEventType.CONSENT_REJECTED,
                    {"via": TransitionChannels.APPROVAL, "reason": TransitionReasons.VALID_UNTIL_ELAPSED},
                )
                if rejected is None:
                    raise _TransitionRace()
                return TransitionResult(outcome=TransitionOutcome.NO_EFFECT, consent=rejected)

            side_effects = self._supersede_group(session, group_id, now, consent_id, TransitionChannels.APPROVAL)
            approved = self._apply_transition(
                session, consent_id, ConsentStatus.REQUESTED, ConsentStatus.ACTIVE,
                now, AuditEventType.CONSENT_APPROVED,
                {"via": TransitionChannels.APPROVAL},
                conditions=(ConsentRecordDB.approval_token == token,),
            )
            if approved is None:
                raise _TransitionRace()
            return TransitionResult(
                outcome=TransitionOutcome.APPLIED,
                consent=approved,
                side_effects=side_effects,
            )

        try:
            return self.database.run_in_transaction(work, "approve_consent")
        except _TransitionRace:
            logger.warning("Approval lost a concurrent transition")
            return TransitionResult(outcome=TransitionOutcome.NO_EFFECT)

    def reject_by_token(self, token: str) -> TransitionResult:
        """REQUESTED -> REJECTED for the row holding ``token`` and its pending siblings"""
        token = validate_token(token)
        if token is None:
            return TransitionResult(outcome=TransitionOutcome.TOKEN_NOT_FOUND)

        def work(session: Session) -> TransitionResult:
            now = self.now()
            row = self._find_pending_by_token(session, token, now)
            if row is None:
                return TransitionResult(outcome=TransitionOutcome.TOKEN_NOT_FOUND)

            consent_id, group_id = row.consent_id, row.consent_group_id
            rejected = self._apply_transition(
                session, consent_id, ConsentStatus.REQUESTED, ConsentStatus.REJECTED,
                now, AuditEventType.CONSENT_REJECTED,
                {"via": TransitionChannels.APPROVAL, "reason": TransitionReasons.REJECTED_BY_USER},
                conditions=(ConsentRecordDB.approval_token == token,),
            )
            if rejected is None:
                raise _TransitionRace()

            siblings = self._reject_pending_in_group(
                session, group_id, now, consent_id,
                {
                    "via": TransitionChannels.APPROVAL,
                    "reason": TransitionReasons.SIBLING_REJECTED,
                    "rejected_with": consent_id,
                },
            )
            return TransitionResult(
                outcome=TransitionOutcome.APPLIED,
                consent=rejected,
                side_effects=siblings,
            )

        try:
            return self.database.run_in_transaction(work, "reject_consent")
        except _TransitionRace:
            logger.warning("Rejection lost a concurrent transition")
            return TransitionResult(outcome=TransitionOutcome.NO_EFFECT)

    def revoke(self, consent_id: str) -> TransitionResult:
        """
        ACTIVE -> REVOKED for one specific version.

        Not silently idempotent: a version that is not ACTIVE (including one
        already revoked) yields NOT_ACTIVE with its current state.

        Raises:
            ConsentNotFoundError: If no such consent exists
        """
        def work(session: Session) -> TransitionResult:
            now = self.now()
            row = session.get(ConsentRecordDB, consent_id, with_for_update=True)
            if row is None:
                raise ConsentNotFoundError(consent_id)

            revoked = self._apply_transition(
                session, consent_id, ConsentStatus.ACTIVE, ConsentStatus.REVOKED,
                now, AuditEventType.CONSENT_REVOKED,
                {"revoked_via": TransitionChannels.DIRECT},
            )
            if revoked is None:
                return TransitionResult(
                    outcome=TransitionOutcome.NOT_ACTIVE,
                    consent=self._from_db_model(row),
                )
            return TransitionResult(outcome=TransitionOutcome.APPLIED, consent=revoked)

        result = self.database.run_in_transaction(work, "revoke_consent")
        if not result.applied:
            logger.warning("Revoke had no effect", consent_id=consent_id,
                           status=result.consent.status.value)
        return result

    def revoke_latest_active(self, user_id: str, purpose: str) -> TransitionResult:
        """
        Revoke whatever version currently authorizes (user_id, purpose).

        Caller-idempotent: NO_ACTIVE_CONSENT when nothing is active. An ACTIVE
        version found already elapsed is expired (and audited) rather than revoked.
        """
        user_id = validate_user_id(user_id)
        purpose = validate_purpose(purpose)

        def work(session: Session) -> TransitionResult:
            now = self.now()
            active = self.active_consent_for_update(session, user_id, purpose)
            if active is None:
                return TransitionResult(outcome=TransitionOutcome.NO_ACTIVE_CONSENT)

            if active.is_elapsed(now):
                expired = self.expire_within(session, active.consent_id, now, TransitionChannels.SEMANTIC)
                return TransitionResult(
                    outcome=TransitionOutcome.NO_ACTIVE_CONSENT,
                    side_effects=[expired] if expired is not None else [],
                )

            revoked = self._apply_transition(
                session, active.consent_id, ConsentStatus.ACTIVE, ConsentStatus.REVOKED,
                now, AuditEventType.CONSENT_REVOKED,
                {"revoked_via": TransitionChannels.SEMANTIC},
            )
            if revoked is None:
                return TransitionResult(outcome=TransitionOutcome.NO_ACTIVE_CONSENT)
            return TransitionResult(outcome=TransitionOutcome.APPLIED, consent=revoked)

        return self.database.run_in_transaction(work, "revoke_latest_active")

    def expire_if_due(self, consent_id: str, via: str = TransitionChannels.ON_DEMAND) -> TransitionResult:
        """
        ACTIVE -> EXPIRED iff validUntil has elapsed, as one conditional update.

        Raises:
            ConsentNotFoundError: If no such consent exists
        """
        def work(session: Session) -> TransitionResult:
            now = self.now()
            row = session.get(ConsentRecordDB, consent_id)
            if row is None:
                raise ConsentNotFoundError(consent_id)

            expired = self.expire_within(session, consent_id, now, via)
            if expired is None:
                return TransitionResult(
                    outcome=TransitionOutcome.NO_EFFECT,
                    consent=self._from_db_model(row),
                )
            return TransitionResult(outcome=TransitionOutcome.APPLIED, consent=expired)

        return self.database.run_in_transaction(work, "expire_consent")

    def expire_due_consents(self, via: str = TransitionChannels.SCHEDULED_JOB) -> List[Consent]:
        """Bulk ACTIVE -> EXPIRED for every elapsed version; safe to run concurrently with itself"""
        def work(session: Session) -> List[Consent]:
            now = self.now()
            due = (
                session.query(ConsentRecordDB.consent_id)
                .filter(
                    ConsentRecordDB.status == ConsentStatus.ACTIVE.value,
                    ConsentRecordDB.valid_until <= now,
                )
                .order_by(ConsentRecordDB.valid_until.asc())
                .all()
            )
            expired = []
            for (consent_id,) in due:
                consent = self.expire_within(session, consent_id, now, via)
                if consent is not None:
                    expired.append(consent)
            return expired

        expired = self.database.run_in_transaction(work, "expire_due_consents")
        if expired:
            logger.info("Expired due consents", count=len(expired))
        return expired

    def reject_stale_requests(self) -> List[Consent]:
        """Bulk REQUESTED -> REJECTED for requests whose approval window or validity has elapsed"""
        def work(session: Session) -> List[Consent]:
            now = self.now()
            stale = or_(
                ConsentRecordDB.approval_expires_at <= now,
                ConsentRecordDB.valid_until <= now,
            )
            rows = (
                session.query(ConsentRecordDB.consent_id, ConsentRecordDB.valid_until)
                .filter(ConsentRecordDB.status == ConsentStatus.REQUESTED.value, stale)
                .order_by(ConsentRecordDB.created_at.asc())
                .all()
            )
            rejected = []
            for consent_id, valid_until in rows:
                reason = (TransitionReasons.VALID_UNTIL_ELAPSED if valid_until <= now
                          else TransitionReasons.APPROVAL_WINDOW_ELAPSED)
                consent = self._apply_transition(
                    session, consent_id, ConsentStatus.REQUESTED, ConsentStatus.REJECTED,
                    now, AuditEventType.CONSENT_REJECTED,
                    {"via": TransitionChannels.SCHEDULED_JOB, "reason": reason},
                    conditions=(stale,),
                )
                if consent is not None:
                    rejected.append(consent)
            return rejected

        rejected = self.database.run_in_transaction(work, "reject_stale_requests")
        if rejected:
            logger.info("Rejected stale consent requests", count=len(rejected))
        return rejected

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def resolve(self, user_id: str, purpose: str) -> Optional[Consent]:
        """
        The authoritative consent: ACTIVE, unexpired, highest version.

        This is the only lookup processing decisions may use.
        """
        user_id = validate_user_id(user_id)
        purpose = validate_purpose(purpose)

        with self.database.SessionLocal() as session:
            row = (
                session.query(ConsentRecordDB)
                .filter(
                    ConsentRecordDB.consent_group_id == make_consent_group_id(user_id, purpose),
                    ConsentRecordDB.status == ConsentStatus.ACTIVE.value,
                    ConsentRecordDB.valid_until > self.now(),
                )
                .order_by(ConsentRecordDB.version.desc())
                .first()
            )
            return self._from_db_model(row) if row is not None else None

    def get_consent(self, consent_id: str) -> Consent:
        """
        Get a specific consent version by ID, for history and audit lookups.

        Raises:
            ConsentNotFoundError: If no such consent exists
        """
        with self.database.SessionLocal() as session:
            row = session.get(ConsentRecordDB, consent_id)
            if row is None:
                raise ConsentNotFoundError(consent_id)
            return self._from_db_model(row)

    def get_group_history(self, user_id: str, purpose: str) -> List[Consent]:
        """All versions of one group, oldest first"""
        with self.database.SessionLocal() as session:
            rows = (
                session.query(ConsentRecordDB)
                .filter(ConsentRecordDB.consent_group_id == make_consent_group_id(user_id, purpose))
                .order_by(ConsentRecordDB.version.asc())
                .all()
            )
            return [self._from_db_model(row) for row in rows]

    def get_user_consents(self, user_id: str) -> List[Consent]:
        """Every version for a user across all purposes"""
        with self.database.SessionLocal() as session:
            rows = (
                session.query(ConsentRecordDB)
                .filter(ConsentRecordDB.user_id == user_id)
                .order_by(ConsentRecordDB.consent_group_id.asc(), ConsentRecordDB.version.asc())
                .all()
            )
            return [self._from_db_model(row) for row in rows]
