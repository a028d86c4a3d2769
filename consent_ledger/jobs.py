"""
Periodic maintenance jobs for the consent ledger
Expires elapsed consents and rejects stale approval requests on a timer
"""

from typing import Optional

import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .config import get_ledger_config
from .consent.service import ConsentService
from .exceptions import StorageFailureError

logger = structlog.get_logger(__name__)

SWEEP_JOB_ID = "consent_sweep"


def run_consent_sweep(service: ConsentService) -> None:
    """One sweep pass; a failed pass is logged and retried on the next tick"""
    try:
        report = service.run_sweep()
    except StorageFailureError as e:
        logger.error("Consent sweep failed", error=e.message, **e.details)
        return

    if report.total:
        logger.info("[Scheduler] Consent sweep applied transitions",
                    expired=len(report.expired),
                    rejected=len(report.rejected))


def create_sweep_scheduler(
    service: ConsentService,
    interval_minutes: Optional[int] = None
) -> BackgroundScheduler:
    """Build (but do not start) a scheduler running the sweep every ``interval_minutes``"""
    if interval_minutes is None:
        interval_minutes = get_ledger_config().sweep_interval_minutes

    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        run_consent_sweep,
        trigger=IntervalTrigger(minutes=interval_minutes),
        args=[service],
        id=SWEEP_JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    logger.info("[Scheduler] Consent sweep scheduled", interval_minutes=interval_minutes)
    return scheduler
