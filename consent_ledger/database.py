"""
Database plumbing for the consent ledger
Shared declarative base, UTC-aware datetime column type and the
transactional boundary every state transition and audit append runs in
"""

import random
import time
from contextlib import contextmanager
from datetime import datetime, UTC
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar

import structlog
from sqlalchemy import DateTime, create_engine, event
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from .config import get_ledger_config
from .exceptions import StorageFailureError

logger = structlog.get_logger(__name__)

Base = declarative_base()

T = TypeVar("T")

# Driver messages that indicate the transaction lost a race and may be replayed
_RETRYABLE_MARKERS = ("database is locked", "deadlock", "could not serialize")


class UTCDateTime(TypeDecorator):
    """Persist datetimes as naive UTC and hand them back timezone-aware"""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def _is_retryable(exc: SQLAlchemyError) -> bool:
    if isinstance(exc, IntegrityError):
        return True
    if isinstance(exc, OperationalError):
        message = str(exc.orig).lower()
        return any(marker in message for marker in _RETRYABLE_MARKERS)
    return False


def _retry_delay(attempt: int, base: float) -> float:
    """Full-jitter exponential backoff for the given (1-based) attempt"""
    return random.uniform(0, base * (2 ** (attempt - 1)))


def _use_immediate_transactions(engine) -> None:
    """
    Open every SQLite transaction with BEGIN IMMEDIATE.

    The write lock is taken before the first read, so two writers never
    both read the same group tail or ledger tail; the second one waits on
    the busy timeout instead of failing at commit.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    """Engine and session factory shared by the consent store and the audit ledger"""

    def __init__(self, database_url: Optional[str] = None, echo: bool = False):
        config = get_ledger_config()
        self.database_url = database_url or config.database_url
        self.retry_backoff = config.transaction_retry_backoff_seconds
        self._in_memory = self.database_url in ("sqlite://", "sqlite:///:memory:")

        engine_kwargs: Dict[str, Any] = {"echo": echo}
        if self.database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {
                "check_same_thread": False,
                "timeout": config.sqlite_busy_timeout_seconds,
            }
            if self._in_memory:
                # One shared connection, otherwise every session sees an empty database
                engine_kwargs["poolclass"] = StaticPool

        self.engine = create_engine(self.database_url, **engine_kwargs)
        if self.database_url.startswith("sqlite") and not self._in_memory:
            _use_immediate_transactions(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_schema(self) -> None:
        """Create every table registered on the shared base"""
        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Session scope that commits on success and rolls back on any error"""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def run_in_transaction(
        self,
        work: Callable[[Session], T],
        operation: str,
        retries: Optional[int] = None
    ) -> T:
        """
        Run ``work`` inside one transaction.

        A transaction that loses a uniqueness or serialization race is
        replayed from scratch up to ``retries`` times, after a jittered delay
        that doubles per attempt; ``work`` must therefore
        derive everything it writes from what it reads in the session.

        Raises:
            StorageFailureError: If the transaction could not be committed
        """
        if retries is None:
            retries = get_ledger_config().max_transaction_retries

        attempt = 0
        while True:
            attempt += 1
            try:
                with self.transaction() as session:
                    return work(session)
            except SQLAlchemyError as exc:
                if _is_retryable(exc) and attempt <= retries:
                    delay = _retry_delay(attempt, self.retry_backoff)
                    logger.warning("Transaction conflict, retrying",
                                   operation=operation, attempt=attempt,
                                   delay=round(delay, 4), error=str(exc))
                    time.sleep(delay)
                    continue

                logger.error("Transaction failed", operation=operation,
                             attempt=attempt, error=str(exc))
                raise StorageFailureError(operation, reason=str(exc)) from exc
