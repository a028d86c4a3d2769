"""Tests for the periodic consent sweep wiring."""

from __future__ import annotations

from datetime import timedelta

from consent_ledger.consent.models import ConsentStatus
from consent_ledger.exceptions import StorageFailureError
from consent_ledger.jobs import SWEEP_JOB_ID, create_sweep_scheduler, run_consent_sweep


def test_scheduler_registers_single_sweep_job(service) -> None:
    scheduler = create_sweep_scheduler(service, interval_minutes=7)

    job = scheduler.get_job(SWEEP_JOB_ID)

    assert job is not None
    assert job.trigger.interval == timedelta(minutes=7)
    assert job.max_instances == 1
    assert job.coalesce is True
    assert not scheduler.running


def test_sweep_job_expires_due_consents(service, store, clock) -> None:
    consent = store.create("user-1", "marketing", ["email"], clock() + timedelta(days=1), auto_approve=True)
    clock.advance(days=2)

    run_consent_sweep(service)

    assert store.get_consent(consent.consent_id).status == ConsentStatus.EXPIRED


def test_sweep_job_survives_storage_failure(service, monkeypatch) -> None:
    def failing_sweep():
        raise StorageFailureError("expire_due_consents", reason="connection lost")

    monkeypatch.setattr(service, "run_sweep", failing_sweep)

    run_consent_sweep(service)
