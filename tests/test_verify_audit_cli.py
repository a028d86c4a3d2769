"""Tests for the audit chain verification command."""

from __future__ import annotations

from datetime import timedelta

import pytest
from click.testing import CliRunner

from consent_ledger.audit.ledger import AuditLedger, AuditLogDB
from consent_ledger.consent.storage import ConsentStore
from consent_ledger.database import Database
from consent_ledger.exceptions import AuditChainError
from consent_ledger.verify_audit import assert_chain, main


@pytest.fixture
def database_url(tmp_path, config):
    url = f"sqlite:///{tmp_path / 'ledger.db'}"
    database = Database(url)
    store = ConsentStore(database=database, ledger=AuditLedger(database), config=config)
    consent = store.create("user-1", "marketing", ["email"], store.now() + timedelta(days=1))
    store.approve_by_token(consent.approval_token)
    store.revoke(consent.consent_id)
    yield url
    database.engine.dispose()


def tamper(url: str) -> None:
    database = Database(url)
    with database.transaction() as session:
        row = session.query(AuditLogDB).filter_by(sequence=2).one()
        row.details = {"purpose": "analytics"}
    database.engine.dispose()


def test_intact_chain_exits_zero(database_url) -> None:
    result = CliRunner().invoke(main, ["--database-url", database_url])

    assert result.exit_code == 0
    assert "verified successfully (3 entries)" in result.output


def test_tampered_chain_exits_one(database_url) -> None:
    tamper(database_url)

    result = CliRunner().invoke(main, ["--database-url", database_url])

    assert result.exit_code == 1
    assert "hash_mismatch" in result.output
    assert "entry index: 1" in result.output


def test_assert_chain_raises_on_divergence(database_url) -> None:
    tamper(database_url)
    database = Database(database_url)

    try:
        with pytest.raises(AuditChainError) as exc_info:
            assert_chain(AuditLedger(database))
    finally:
        database.engine.dispose()

    assert exc_info.value.details["index"] == 1
    assert exc_info.value.details["reason"] == "hash_mismatch"
