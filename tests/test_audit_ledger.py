"""Tests for the hash-chained audit ledger."""

from __future__ import annotations

from typing import Any, Dict, Optional

import pytest

from consent_ledger.audit.ledger import (
    AuditEventType,
    AuditLogDB,
    compute_entry_hash,
    verify_chain,
)
from conftest import START


class TestAuditLedger:
    """Append, read back and verify the chain."""

    @pytest.fixture(autouse=True)
    def _setup(self, database, ledger, clock) -> None:
        self.database = database
        self.ledger = ledger
        self.clock = clock

    def _append(
        self,
        event_type: AuditEventType = AuditEventType.CONSENT_REQUESTED,
        user_id: str = "user-1",
        consent_id: Optional[str] = "consent_a",
        details: Optional[Dict[str, Any]] = None,
    ):
        with self.database.transaction() as session:
            return self.ledger.append(
                session,
                event_type,
                user_id=user_id,
                consent_id=consent_id,
                details=details if details is not None else {"purpose": "marketing"},
            )

    def test_empty_chain_is_valid(self) -> None:
        result = self.ledger.verify()

        assert result.valid
        assert result.entries_checked == 0
        assert result.first_invalid_index is None

    def test_entries_link_to_previous_hash(self) -> None:
        first = self._append()
        second = self._append(AuditEventType.CONSENT_APPROVED)

        assert first.prev_hash is None
        assert first.sequence == 1
        assert second.prev_hash == first.hash
        assert second.sequence == 2
        assert first.hash != second.hash

    def test_read_all_returns_chain_order_and_verifies(self) -> None:
        appended = [self._append(details={"step": i}) for i in range(5)]

        entries = self.ledger.read_all()

        assert [e.audit_id for e in entries] == [e.audit_id for e in appended]
        assert verify_chain(entries).valid
        assert self.ledger.verify().entries_checked == 5

    def test_timestamps_are_utc_aware(self) -> None:
        self._append()

        entry = self.ledger.read_all()[0]

        assert entry.timestamp.tzinfo is not None
        assert entry.timestamp == START

    def test_mutated_details_break_chain_at_that_entry(self) -> None:
        for i in range(3):
            self._append(details={"step": i})

        with self.database.transaction() as session:
            row = session.query(AuditLogDB).filter_by(sequence=2).one()
            row.details = {"step": 99}

        result = self.ledger.verify()

        assert not result.valid
        assert result.first_invalid_index == 1
        assert result.reason == "hash_mismatch"

    def test_deleted_entry_is_detected(self) -> None:
        for i in range(3):
            self._append(details={"step": i})

        with self.database.transaction() as session:
            session.query(AuditLogDB).filter_by(sequence=2).delete()

        result = self.ledger.verify()

        assert not result.valid
        assert result.first_invalid_index == 1
        assert result.reason == "prev_hash_mismatch"

    def test_reordered_entries_are_detected(self) -> None:
        for i in range(3):
            self._append(details={"step": i})
        entries = self.ledger.read_all()

        result = verify_chain([entries[1], entries[0], entries[2]])

        assert not result.valid
        assert result.first_invalid_index == 0
        assert result.first_invalid_audit_id == entries[1].audit_id

    def test_sequence_gap_is_detected(self) -> None:
        for i in range(3):
            self._append(details={"step": i})
        entries = self.ledger.read_all()
        entries[1] = entries[1].model_copy(update={"sequence": 7})

        result = verify_chain(entries)

        assert not result.valid
        assert result.reason == "sequence_gap"
        assert result.first_invalid_index == 1

    def test_details_hash_is_independent_of_key_order(self) -> None:
        common = dict(
            prev_hash=None,
            audit_id="audit_1",
            event_type="CONSENT_REQUESTED",
            consent_id="consent_a",
            user_id="user-1",
            timestamp=START,
        )

        left = compute_entry_hash(details={"b": 1, "a": [1, 2]}, **common)
        right = compute_entry_hash(details={"a": [1, 2], "b": 1}, **common)

        assert left == right

    def test_field_boundaries_do_not_collide(self) -> None:
        common = dict(prev_hash=None, audit_id="audit_1", event_type="CONSENT_REQUESTED",
                      timestamp=START, details={})

        left = compute_entry_hash(consent_id="ab", user_id="c", **common)
        right = compute_entry_hash(consent_id="a", user_id="bc", **common)

        assert left != right

    def test_clock_step_backwards_keeps_timestamps_monotonic(self) -> None:
        first = self._append()
        self.clock.advance(minutes=-10)
        second = self._append()

        assert second.timestamp == first.timestamp
        assert [e.audit_id for e in self.ledger.read_all()] == [first.audit_id, second.audit_id]
        assert self.ledger.verify().valid

    def test_append_rolls_back_with_its_transaction(self) -> None:
        with pytest.raises(RuntimeError):
            with self.database.transaction() as session:
                self.ledger.append(session, AuditEventType.CONSENT_CREATED, user_id="user-1")
                raise RuntimeError("abort")

        assert self.ledger.read_all() == []

    def test_get_entries_filters(self) -> None:
        self._append(AuditEventType.CONSENT_REQUESTED, user_id="user-1")
        self._append(AuditEventType.CONSENT_APPROVED, user_id="user-1")
        self._append(AuditEventType.CONSENT_REQUESTED, user_id="user-2", consent_id="consent_b")

        assert len(self.ledger.get_entries(user_id="user-1")) == 2
        assert len(self.ledger.get_entries(event_type=AuditEventType.CONSENT_REQUESTED)) == 2
        assert len(self.ledger.get_entries(consent_id="consent_b")) == 1
        assert len(self.ledger.get_entries(limit=1)) == 1

    def test_export_audit_trail_reports_integrity(self) -> None:
        self._append(user_id="user-1")
        self._append(user_id="user-2", consent_id="consent_b")

        export = self.ledger.export_audit_trail(user_id="user-2")

        assert export["user_id"] == "user-2"
        assert export["event_count"] == 1
        assert export["events"][0]["consent_id"] == "consent_b"
        assert export["integrity"]["valid"] is True
