"""
Consent lifecycle orchestrator
Processing decisions, lazy expiry, sweeps and compliance exports on top of the store
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from ..audit.ledger import AuditEntry, AuditEventType, ChainVerification
from ..config import LedgerConfig, get_ledger_config
from ..constants import TransitionChannels
from ..policy.engine import DenyReason, PolicyDecision, evaluate
from .models import Consent, ConsentStatus, TransitionResult
from .schemas import CreateConsentRequest, ProcessRequest
from .storage import ConsentStore

logger = structlog.get_logger(__name__)


class ProcessingOutcome(BaseModel):
    """A processing decision together with the consent it was judged against and its audit entry"""
    model_config = ConfigDict(frozen=True)

    decision: PolicyDecision
    consent: Optional[Consent] = None
    audit_entry: AuditEntry

    @property
    def allowed(self) -> bool:
        return self.decision.allowed


class SweepReport(BaseModel):
    """What one sweep pass changed"""
    expired: List[Consent] = Field(default_factory=list)
    rejected: List[Consent] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.expired) + len(self.rejected)


class ConsentService:
    """Lifecycle orchestrator: the entry point used by the HTTP surface and the sweep job"""

    def __init__(self, store: Optional[ConsentStore] = None, config: Optional[LedgerConfig] = None):
        self.config = config or get_ledger_config()
        self.store = store or ConsentStore(config=self.config)
        self.ledger = self.store.ledger

    # Lifecycle

    def request_consent(self, request: CreateConsentRequest, auto_approve: Optional[bool] = None) -> Consent:
        """Create the next consent version; REQUESTED unless auto-approve is on"""
        return self.store.create(
            user_id=request.user_id,
            purpose=request.purpose,
            data_types=request.data_types,
            valid_until=request.valid_until,
            auto_approve=auto_approve,
        )

    def approve(self, token: str) -> TransitionResult:
        return self.store.approve_by_token(token)

    def reject(self, token: str) -> TransitionResult:
        return self.store.reject_by_token(token)

    def revoke(self, consent_id: str) -> TransitionResult:
        return self.store.revoke(consent_id)

    def revoke_latest_active(self, user_id: str, purpose: str) -> TransitionResult:
        return self.store.revoke_latest_active(user_id, purpose)

    # Reads

    def get_consent(self, consent_id: str) -> Consent:
        """
        Read one version. An ACTIVE version whose validUntil has elapsed is
        expired (and audited) before being returned, so readers never see a
        stale ACTIVE status.

        Raises:
            ConsentNotFoundError: If no such consent exists
        """
        consent = self.store.get_consent(consent_id)
        if consent.status == ConsentStatus.ACTIVE and consent.is_elapsed(self.store.now()):
            result = self.store.expire_if_due(consent_id, via=TransitionChannels.READ)
            if result.consent is not None:
                return result.consent
            return self.store.get_consent(consent_id)
        return consent

    def resolve(self, user_id: str, purpose: str) -> Optional[Consent]:
        return self.store.resolve(user_id, purpose)

    def get_consent_history(self, user_id: str, purpose: str) -> List[Consent]:
        return self.store.get_group_history(user_id, purpose)

    # Processing

    def process(self, request: ProcessRequest) -> ProcessingOutcome:
        """
        Decide whether ``request`` may proceed and record the decision.

        Resolution, lazy expiry and the PROCESSING_ALLOWED / PROCESSING_DENIED
        entry share one transaction, so the logged decision always refers to
        the consent state it was made against.
        """
        policy_request = request.to_policy_request()

        def work(session: Session) -> ProcessingOutcome:
            now = self.store.now()
            consent = self.store.active_consent_for_update(session, request.user_id, request.purpose)

            if consent is None:
                decision = PolicyDecision.deny(DenyReason.NO_ACTIVE_CONSENT)
            elif consent.is_elapsed(now):
                expired = self.store.expire_within(
                    session, consent.consent_id, now, TransitionChannels.PROCESSING
                )
                consent = expired or consent
                decision = PolicyDecision.deny(DenyReason.CONSENT_EXPIRED)
            else:
                decision = evaluate(consent, policy_request)

            event_type = (AuditEventType.PROCESSING_ALLOWED if decision.allowed
                          else AuditEventType.PROCESSING_DENIED)
            entry = self.ledger.append(
                session,
                event_type,
                user_id=request.user_id,
                consent_id=consent.consent_id if consent else None,
                details=self._decision_details(request, consent, decision),
            )
            return ProcessingOutcome(decision=decision, consent=consent, audit_entry=entry)

        outcome = self.store.database.run_in_transaction(work, "process_request")

        if outcome.allowed:
            logger.info("Processing allowed",
                        user_id=request.user_id,
                        purpose=request.purpose,
                        consent_id=outcome.consent.consent_id,
                        version=outcome.consent.version)
        else:
            logger.warning("Processing denied",
                           user_id=request.user_id,
                           purpose=request.purpose,
                           reason=outcome.decision.reason_code)
        return outcome

    @staticmethod
    def _decision_details(
        request: ProcessRequest,
        consent: Optional[Consent],
        decision: PolicyDecision
    ) -> Dict[str, Any]:
        return {
            "purpose": request.purpose,
            "requested_data_types": list(request.data_types),
            "consented_data_types": sorted(consent.data_types) if consent else [],
            "requested_version": request.version,
            "consent_version": consent.version if consent else None,
            "decision": decision.effect.value,
            "reason": decision.reason_code,
        }

    # Maintenance

    def run_sweep(self) -> SweepReport:
        """Expire elapsed ACTIVE versions and reject stale requests"""
        report = SweepReport(
            expired=self.store.expire_due_consents(),
            rejected=self.store.reject_stale_requests(),
        )
        logger.info("Consent sweep completed",
                    expired=len(report.expired),
                    rejected=len(report.rejected))
        return report

    # Compliance

    def export_consent_history(self, user_id: str) -> Dict[str, Any]:
        """Export every consent version for a user, approval secrets excluded"""
        consents = self.store.get_user_consents(user_id)
        return {
            "user_id": user_id,
            "exported_at": self.store.now().isoformat(),
            "consents": [consent.public_view() for consent in consents],
        }

    def get_audit_entries(
        self,
        user_id: Optional[str] = None,
        consent_id: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[AuditEntry]:
        return self.ledger.get_entries(
            user_id=user_id,
            consent_id=consent_id,
            event_type=event_type,
            start_time=start_time,
            end_time=end_time,
            limit=limit,
        )

    def export_audit_trail(
        self,
        user_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None
    ) -> Dict[str, Any]:
        return self.ledger.export_audit_trail(user_id=user_id, start_time=start_time, end_time=end_time)

    def verify_audit_chain(self) -> ChainVerification:
        return self.ledger.verify()


# Global consent service instance
_consent_service: Optional[ConsentService] = None


def get_consent_service() -> ConsentService:
    """Get the global consent service instance"""
    global _consent_service
    if _consent_service is None:
        _consent_service = ConsentService()
    return _consent_service
