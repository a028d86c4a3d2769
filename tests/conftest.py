"""Shared fixtures: an in-memory database and a clock tests can move by hand."""

from __future__ import annotations

from datetime import datetime, timedelta, UTC

import pytest

from consent_ledger.audit.ledger import AuditLedger
from consent_ledger.config import LedgerConfig
from consent_ledger.consent.service import ConsentService
from consent_ledger.consent.storage import ConsentStore
from consent_ledger.consent.tokens import ApprovalTokenIssuer
from consent_ledger.database import Database

START = datetime(2030, 1, 1, 12, 0, tzinfo=UTC)


class ManualClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def config() -> LedgerConfig:
    return LedgerConfig(
        database_url="sqlite://",
        auto_approve=False,
        approval_token_ttl_hours=24,
        admin_api_key=None,
    )


@pytest.fixture
def database():
    db = Database("sqlite://")
    yield db
    db.engine.dispose()


@pytest.fixture
def ledger(database, clock) -> AuditLedger:
    return AuditLedger(database, clock=clock)


@pytest.fixture
def store(database, ledger, clock, config) -> ConsentStore:
    return ConsentStore(
        database=database,
        ledger=ledger,
        token_issuer=ApprovalTokenIssuer(ttl_hours=24),
        clock=clock,
        config=config,
    )


@pytest.fixture
def service(store, config) -> ConsentService:
    return ConsentService(store=store, config=config)


@pytest.fixture
def file_store(tmp_path, clock, config) -> ConsentStore:
    """Store on a file-backed database, so concurrent sessions use separate connections."""
    db = Database(f"sqlite:///{tmp_path / 'ledger.db'}")
    store = ConsentStore(
        database=db,
        ledger=AuditLedger(db, clock=clock),
        token_issuer=ApprovalTokenIssuer(ttl_hours=24),
        clock=clock,
        config=config,
    )
    yield store
    db.engine.dispose()
