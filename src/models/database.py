"""Database session management and persistence error handling."""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator

from sqlalchemy import event, inspect, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from . import create_database_engine, create_tables

logger = logging.getLogger(__name__)

CATEGORY_ENCODING = "encoding"
CATEGORY_DUPLICATE_KEY = "duplicate_key"
CATEGORY_MISSING_FIELD = "missing_field"
CATEGORY_OTHER = "other"


class PersistenceError(Exception):
    """A row could not be written; ``category`` says why."""

    def __init__(self, category: str, message: str):
        super().__init__(message)
        self.category = category
        self.message = message


def categorize_persistence_error(exc: BaseException) -> str:
    """Map a driver/ORM exception onto the persistence error categories."""
    message = str(exc)
    lowered = message.lower()
    if "invalid byte sequence" in lowered or "utf8" in lowered:
        return CATEGORY_ENCODING
    if (
        "duplicate key" in lowered
        or "unique constraint" in lowered
        or "unique violation" in lowered
    ):
        return CATEGORY_DUPLICATE_KEY
    if "violates not-null" in lowered or "not null constraint" in lowered:
        return CATEGORY_MISSING_FIELD
    return CATEGORY_OTHER


def to_persistence_error(exc: BaseException) -> PersistenceError:
    category = categorize_persistence_error(exc)
    if category == CATEGORY_ENCODING:
        message = "Content encoding error - text contains invalid characters"
    elif category == CATEGORY_DUPLICATE_KEY:
        message = "Article with this URL already exists"
    elif category == CATEGORY_MISSING_FIELD:
        message = "Missing required field"
    else:
        message = f"Database save failed: {exc}"
    return PersistenceError(category, message)


def _is_lock_error(exc: OperationalError) -> bool:
    lowered = str(exc).lower()
    return "database is locked" in lowered or "database table is locked" in lowered


WRITES_FLUSHED = "writes_flushed"


@event.listens_for(Session, "after_flush")
def _mark_writes_flushed(session, flush_context):
    session.info[WRITES_FLUSHED] = True


@event.listens_for(Session, "after_transaction_end")
def _clear_writes_flushed(session, transaction):
    if transaction.parent is None:
        session.info.pop(WRITES_FLUSHED, None)


def _unflushed_changes(session: Session) -> list[tuple[Any, dict[str, Any]]]:
    changes = []
    for obj in session.dirty:
        state = inspect(obj)
        values = {
            attr.key: attr.value for attr in state.attrs if attr.history.has_changes()
        }
        if values:
            changes.append((obj, values))
    return changes


def _commit_with_retry(
    session: Session,
    retries: int = 4,
    backoff: float = 0.1,
    *,
    replay: Callable[[], Any] | None = None,
):
    """Commit ``session``, retrying SQLite lock errors with backoff.

    A failed commit must be rolled back, which discards the whole
    transaction. ``replay`` re-applies the unit of work before the next
    attempt. Without it, only changes that were still unflushed when the
    commit started (pending inserts and attribute updates) are restored; if
    the transaction had already flushed writes, the lock error propagates
    instead. Any other failure rolls the session back and propagates.
    """
    attempt = 0
    replaying = False
    while True:
        flushed = False
        pending: list[Any] = []
        changes: list[tuple[Any, dict[str, Any]]] = []
        try:
            if replaying:
                replay()
            flushed = bool(session.info.get(WRITES_FLUSHED))
            pending = list(session.new)
            changes = _unflushed_changes(session)
            session.commit()
            return
        except OperationalError as exc:
            session.rollback()
            attempt += 1
            if not _is_lock_error(exc) or attempt > retries:
                raise
            if replay is None and flushed:
                logger.warning(
                    "Database locked after writes were flushed; not retrying"
                )
                raise
            delay = backoff * (2 ** (attempt - 1))
            logger.warning(
                "Database locked on commit (attempt %d/%d); retrying in %.2fs",
                attempt,
                retries,
                delay,
            )
            time.sleep(delay)
            replaying = replay is not None
            if not replaying:
                for obj in pending:
                    session.add(obj)
                for obj, values in changes:
                    for key, value in values.items():
                        setattr(obj, key, value)
        except SQLAlchemyError:
            session.rollback()
            raise


def _ensure_sqlite_directory(database_url: str) -> None:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return
    database = url.database
    if not database or database == ":memory:":
        return
    Path(database).parent.mkdir(parents=True, exist_ok=True)


class DatabaseManager:
    """Own an engine, a sessionmaker and one default session.

    Worker threads must not share ``session``; they open their own through
    :meth:`get_session`.
    """

    def __init__(self, database_url: str | None = None, *, create: bool = True):
        if database_url is None:
            from src.config import DATABASE_URL

            database_url = DATABASE_URL
        self.database_url = database_url
        _ensure_sqlite_directory(database_url)
        self.engine = create_database_engine(database_url)
        if create:
            create_tables(self.engine)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.session = self.Session()

    def __enter__(self) -> "DatabaseManager":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @contextmanager
    def get_session(self) -> Iterator[Session]:
        """Yield a fresh session that is closed afterwards."""
        session = self.Session()
        try:
            yield session
        finally:
            session.close()

    def check_health(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except (OperationalError, DBAPIError) as exc:
            logger.warning("Database health check failed: %s", exc)
            return False
        return True

    def close(self):
        try:
            self.session.close()
        finally:
            self.engine.dispose()


__all__ = [
    "CATEGORY_DUPLICATE_KEY",
    "CATEGORY_ENCODING",
    "CATEGORY_MISSING_FIELD",
    "CATEGORY_OTHER",
    "DatabaseManager",
    "PersistenceError",
    "_commit_with_retry",
    "categorize_persistence_error",
    "to_persistence_error",
]
