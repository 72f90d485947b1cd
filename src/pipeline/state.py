"""Status enums and transition rules for sessions, batches, URLs and articles.

Every status change in the pipeline goes through this module so illegal
moves are caught in one place instead of being scattered across the phase
handlers.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    DISCOVERING = "discovering"
    READY_FOR_REVIEW = "ready_for_review"
    REVIEWED = "reviewed"
    SCRAPING = "scraping"
    ANALYZING = "analyzing"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ScrapeStatus(str, Enum):
    PENDING = "pending"
    SCRAPING = "scraping"
    SCRAPED = "scraped"
    FAILED = "failed"
    SKIPPED = "skipped"


class ArticleStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    REJECTED = "rejected"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED}
)

SESSION_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.DISCOVERING: frozenset(
        {
            SessionStatus.READY_FOR_REVIEW,
            SessionStatus.SCRAPING,
            SessionStatus.FAILED,
            SessionStatus.CANCELLED,
        }
    ),
    SessionStatus.READY_FOR_REVIEW: frozenset(
        {SessionStatus.REVIEWED, SessionStatus.FAILED, SessionStatus.CANCELLED}
    ),
    SessionStatus.REVIEWED: frozenset(
        {
            SessionStatus.READY_FOR_REVIEW,
            SessionStatus.SCRAPING,
            SessionStatus.FAILED,
            SessionStatus.CANCELLED,
        }
    ),
    SessionStatus.SCRAPING: frozenset(
        {SessionStatus.ANALYZING, SessionStatus.COMPLETED, SessionStatus.FAILED}
    ),
    SessionStatus.ANALYZING: frozenset(
        {SessionStatus.FINALIZING, SessionStatus.FAILED}
    ),
    SessionStatus.FINALIZING: frozenset(
        {SessionStatus.COMPLETED, SessionStatus.FAILED}
    ),
}

SCRAPE_TRANSITIONS: dict[ScrapeStatus, frozenset[ScrapeStatus]] = {
    ScrapeStatus.PENDING: frozenset(
        {ScrapeStatus.SCRAPING, ScrapeStatus.SKIPPED}
    ),
    ScrapeStatus.SCRAPING: frozenset({ScrapeStatus.SCRAPED, ScrapeStatus.FAILED}),
}

ARTICLE_TRANSITIONS: dict[ArticleStatus, frozenset[ArticleStatus]] = {
    ArticleStatus.DRAFT: frozenset({ArticleStatus.PUBLISHED, ArticleStatus.REJECTED}),
    ArticleStatus.REJECTED: frozenset({ArticleStatus.DRAFT}),
}


class IllegalTransition(Exception):
    """A status change not allowed by the transition tables."""

    def __init__(self, kind: str, current: Any, requested: Any):
        super().__init__(f"Illegal {kind} transition: {current} -> {requested}")
        self.kind = kind
        self.current = current
        self.requested = requested


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_terminal(status: str | SessionStatus) -> bool:
    return SessionStatus(status) in TERMINAL_STATUSES


def can_transition(current: str | SessionStatus, new: str | SessionStatus) -> bool:
    return SessionStatus(new) in SESSION_TRANSITIONS.get(
        SessionStatus(current), frozenset()
    )


def transition(record: Any, new_status: str | SessionStatus) -> Any:
    """Move a session or batch ``record`` to ``new_status``.

    Sets ``completed_at`` when the record reaches ``completed``. Raises
    :class:`IllegalTransition` for moves outside the table.
    """
    current = SessionStatus(record.status)
    target = SessionStatus(new_status)
    if not can_transition(current, target):
        raise IllegalTransition("session", current.value, target.value)
    record.status = target.value
    if target is SessionStatus.COMPLETED and hasattr(record, "completed_at"):
        record.completed_at = _utcnow()
    logger.debug(
        "%s %s: %s -> %s",
        type(record).__name__,
        getattr(record, "id", "?"),
        current.value,
        target.value,
    )
    return record


def fail(record: Any, message: str) -> Any:
    """Drive any non-terminal ``record`` to ``failed`` with ``message``."""
    current = SessionStatus(record.status)
    if current in TERMINAL_STATUSES:
        raise IllegalTransition("session", current.value, SessionStatus.FAILED.value)
    record.status = SessionStatus.FAILED.value
    record.error_message = message
    logger.warning(
        "%s %s failed: %s",
        type(record).__name__,
        getattr(record, "id", "?"),
        message,
    )
    return record


def advance_scrape_status(row: Any, new_status: str | ScrapeStatus) -> Any:
    current = ScrapeStatus(row.scrape_status)
    target = ScrapeStatus(new_status)
    if target not in SCRAPE_TRANSITIONS.get(current, frozenset()):
        raise IllegalTransition("scrape", current.value, target.value)
    row.scrape_status = target.value
    return row


def change_article_status(article: Any, new_status: str | ArticleStatus) -> Any:
    current = ArticleStatus(article.status)
    target = ArticleStatus(new_status)
    if target not in ARTICLE_TRANSITIONS.get(current, frozenset()):
        raise IllegalTransition("article", current.value, target.value)
    article.status = target.value
    return article


@contextmanager
def session_guard(db: Any, record: Any) -> Iterator[Any]:
    """Fail ``record`` and commit when an exception escapes the block.

    ``db`` is a SQLAlchemy session. The original exception is re-raised.
    """
    try:
        yield record
    except Exception as exc:
        db.rollback()
        db.refresh(record)
        if not is_terminal(record.status):
            fail(record, str(exc) or type(exc).__name__)
            db.commit()
        raise
