"""Tests for the transactional boundary and UTC column type."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone, UTC

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from consent_ledger import database as database_module
from consent_ledger.database import UTCDateTime, _retry_delay
from consent_ledger.exceptions import StorageFailureError


class TestRunInTransaction:

    @pytest.fixture(autouse=True)
    def _setup(self, database) -> None:
        self.database = database
        self.attempts = 0

    def _failing(self, error, succeed_on=None):
        def work(session):
            self.attempts += 1
            if succeed_on is not None and self.attempts >= succeed_on:
                return "done"
            raise error
        return work

    def test_integrity_conflict_is_replayed(self) -> None:
        error = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

        result = self.database.run_in_transaction(self._failing(error, succeed_on=3), "test", retries=3)

        assert result == "done"
        assert self.attempts == 3

    def test_gives_up_after_retries(self) -> None:
        error = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

        with pytest.raises(StorageFailureError) as exc_info:
            self.database.run_in_transaction(self._failing(error), "create_consent", retries=1)

        assert self.attempts == 2
        assert exc_info.value.details["operation"] == "create_consent"

    def test_locked_database_is_retryable(self) -> None:
        error = OperationalError("UPDATE", {}, Exception("database is locked"))

        result = self.database.run_in_transaction(self._failing(error, succeed_on=2), "test", retries=3)

        assert result == "done"

    def test_other_operational_errors_fail_immediately(self) -> None:
        error = OperationalError("SELECT", {}, Exception("disk I/O error"))

        with pytest.raises(StorageFailureError):
            self.database.run_in_transaction(self._failing(error), "test", retries=3)

        assert self.attempts == 1

    def test_domain_errors_propagate_unwrapped(self) -> None:
        with pytest.raises(KeyError):
            self.database.run_in_transaction(self._failing(KeyError("x")), "test")

    def test_retries_back_off_between_attempts(self, monkeypatch) -> None:
        delays = []
        monkeypatch.setattr(database_module.time, "sleep", delays.append)
        self.database.retry_backoff = 0.5
        error = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

        self.database.run_in_transaction(self._failing(error, succeed_on=4), "test", retries=5)

        assert len(delays) == 3
        assert all(0 <= delay <= 0.5 * 2 ** i for i, delay in enumerate(delays))

    @pytest.mark.parametrize("attempt", [1, 2, 5])
    def test_retry_delay_is_bounded(self, attempt) -> None:
        for _ in range(20):
            assert 0 <= _retry_delay(attempt, 0.1) <= 0.1 * 2 ** (attempt - 1)


class TestUTCDateTime:

    def setup_method(self) -> None:
        self.column_type = UTCDateTime()

    def test_aware_values_are_stored_as_naive_utc(self) -> None:
        local = datetime(2030, 1, 1, 17, 30, tzinfo=timezone(timedelta(hours=5, minutes=30)))

        stored = self.column_type.process_bind_param(local, None)

        assert stored == datetime(2030, 1, 1, 12, 0)
        assert stored.tzinfo is None

    def test_results_come_back_aware(self) -> None:
        loaded = self.column_type.process_result_value(datetime(2030, 1, 1, 12, 0), None)

        assert loaded == datetime(2030, 1, 1, 12, 0, tzinfo=UTC)

    def test_none_passes_through(self) -> None:
        assert self.column_type.process_bind_param(None, None) is None
        assert self.column_type.process_result_value(None, None) is None
