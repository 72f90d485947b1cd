"""Article content validation.

Two layers share the same pattern lists:

* :func:`detect_error_page` is the extraction-time guard. It rejects
  "page not found" bodies, boilerplate that reads like a generated
  placeholder, generic titles, tiny bodies and error-looking URLs.
* :func:`validate_article` is the finalization-time business check. It
  adds the stricter "no specific details" test, the publish-date cutoff
  and the relevance/sentiment rules, and returns a
  :class:`ValidationResult` value. A rejection is a normal outcome, not an
  exception.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from dateutil import parser as dateparser

from src import config
from src.pipeline.classifier import (
    RelevanceScore,
    organization_label,
    relevance_tier,
)

logger = logging.getLogger(__name__)

ERROR_PAGE_PATTERNS = [
    "error 404",
    "page not found",
    "page doesn't exist",
    "page does not exist",
    "oops, it looks like",
    "we can't find that page",
    "the page you are looking for",
    "sorry, but this page doesn't exist",
    "this page is not available",
    "content not found",
]

GENERIC_CONTENT_PATTERNS = [
    "latest updates from",
    "recent developments and initiatives",
    "continues to focus on innovation",
    "discusses recent developments",
    "this article discusses recent",
    "organization continues to focus",
]

GENERIC_TITLE_PATTERNS = [
    "latest updates",
    "recent updates",
    "latest news",
    "recent news",
    "updates from",
    "news from",
]

ERROR_URL_MARKERS = ("error", "404", "not-found")

# Body of at least this many characters with no concrete details is
# treated as a placeholder during finalization.
SPECIFIC_CONTENT_MIN_LENGTH = 500

_SPECIFIC_DETAIL_PATTERNS = [
    re.compile(r"\d{4}"),  # year
    re.compile(r"\d{1,2}[/\-]\d{1,2}"),  # date
    re.compile(r"\$[\d,]+"),  # money
    re.compile(r"\d+%"),  # percentage
    re.compile(r"[A-Z][a-z]+ [A-Z][a-z]+"),  # proper name
]

CONTENT_TYPE_NEWS = "news"
CONTENT_TYPE_PRESS_RELEASE = "press_release"
CONTENT_TYPE_BLOG_POST = "blog_post"
CONTENT_TYPE_OTHER = "other"


@dataclass
class ValidationResult:
    """Business validation outcome for one article."""

    is_valid: bool
    reasons: list[str] = field(default_factory=list)
    organization_sentiment: str = "Not Mentioned"
    organization_relevance: str = "low"
    content_type: str = CONTENT_TYPE_OTHER
    publish_date_valid: bool = True


def detect_error_page(
    title: str | None,
    summary: str | None,
    content: str | None,
    url: str | None,
    *,
    min_content_length: int = 100,
) -> tuple[bool, list[str]]:
    """Return ``(is_valid, reasons)`` for freshly extracted content."""
    lower_title = (title or "").lower()
    lower_summary = (summary or "").lower()
    lower_content = (content or "").lower()
    lower_url = (url or "").lower()

    for pattern in ERROR_PAGE_PATTERNS:
        if (
            pattern in lower_content
            or pattern in lower_title
            or pattern in lower_summary
        ):
            return False, [f'Detected error page pattern: "{pattern}"']

    for pattern in GENERIC_CONTENT_PATTERNS:
        if pattern in lower_title or pattern in lower_summary:
            return False, [
                "Content appears to be generated boilerplate rather than scraped"
            ]

    for pattern in GENERIC_TITLE_PATTERNS:
        if pattern in lower_title:
            return False, ["Title is too generic to identify a single article"]

    if len(content or "") < min_content_length:
        return False, ["Content too short, likely error page or placeholder"]

    if any(marker in lower_url for marker in ERROR_URL_MARKERS):
        return False, ["URL suggests this is an error page"]

    return True, []


def has_specific_content(content: str | None) -> bool:
    """True when ``content`` carries concrete details such as dates or names."""
    if not content or len(content) <= 300:
        return False
    return any(pattern.search(content) for pattern in _SPECIFIC_DETAIL_PATTERNS)


def detect_placeholder_content(
    title: str | None,
    summary: str | None,
    content: str | None,
    url: str | None,
) -> tuple[bool, list[str]]:
    """Stricter variant of :func:`detect_error_page` used before persisting."""
    is_valid, reasons = detect_error_page(
        title, summary, content, url, min_content_length=0
    )
    if not is_valid:
        return is_valid, reasons

    text = content or ""
    lower_content = text.lower()
    if any(pattern in lower_content for pattern in GENERIC_CONTENT_PATTERNS):
        reasons.append("Detected generic content patterns")

    if not has_specific_content(text) and len(text) < SPECIFIC_CONTENT_MIN_LENGTH:
        reasons.append(
            "Article lacks specific details (names, dates, amounts) and is too "
            "short to be a real news article"
        )

    return not reasons, reasons


def parse_date(value: Any) -> Optional[datetime]:
    """Parse ``value`` into an aware datetime, or None if it cannot be read."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if not text or text.upper() == "N/A":
            return None
        try:
            parsed = dateparser.parse(text)
        except (ValueError, OverflowError, TypeError):
            return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def check_publish_date(value: Any, cutoff: datetime | None = None) -> bool:
    """Return False only for a readable date earlier than ``cutoff``."""
    cutoff = cutoff or config.PUBLISH_DATE_CUTOFF
    parsed = parse_date(value)
    if parsed is None:
        return True
    return parsed >= cutoff


def infer_content_type(title: str | None, content: str | None, url: str | None) -> str:
    lower_title = (title or "").lower()
    head = (content or "")[:400].lower()
    if "press release" in lower_title or "for immediate release" in head:
        return CONTENT_TYPE_PRESS_RELEASE
    if "/blog/" in (url or "").lower():
        return CONTENT_TYPE_BLOG_POST
    return CONTENT_TYPE_NEWS


def _body_of(content: Any) -> str:
    return (
        getattr(content, "markdown_content", None)
        or getattr(content, "markdown", None)
        or getattr(content, "content", None)
        or ""
    )


def _published_of(content: Any) -> Any:
    value = getattr(content, "published_at", None)
    if value is None:
        value = getattr(content, "publish_date", None)
    return value


def validate_article(
    content: Any,
    classification: Any,
    url: str,
    *,
    cutoff: datetime | None = None,
) -> ValidationResult:
    """Apply the cataloguing rules to extracted ``content``.

    ``content`` is any object exposing ``title``, ``summary``, a body
    (``markdown_content`` or ``content``) and a publish date
    (``published_at`` or ``publish_date``). ``classification`` exposes
    ``score`` and ``reasoning``.
    """
    cutoff = cutoff or config.PUBLISH_DATE_CUTOFF
    title = getattr(content, "title", None)
    summary = getattr(content, "summary", None)
    body = _body_of(content)

    is_clean, problems = detect_placeholder_content(title, summary, body, url)
    if not is_clean:
        return ValidationResult(
            is_valid=False,
            reasons=problems,
            organization_sentiment=organization_label(None),
            organization_relevance="low",
            content_type=CONTENT_TYPE_OTHER,
            publish_date_valid=False,
        )

    score = getattr(classification, "score", None)
    relevance = relevance_tier(score)
    publish_date_valid = check_publish_date(_published_of(content), cutoff)

    reasons: list[str] = []
    if score == RelevanceScore.NEGATIVE:
        reasons.append("Article casts negative light on the organization")
    if not publish_date_valid:
        reasons.append(f"Article published before {cutoff.date().isoformat()}")
    if relevance == "low":
        reasons.append("Article has insufficient content about the organization")

    is_valid = not reasons
    if is_valid:
        reasons.append(getattr(classification, "reasoning", None) or "Accepted")

    result = ValidationResult(
        is_valid=is_valid,
        reasons=reasons,
        organization_sentiment=organization_label(score),
        organization_relevance=relevance,
        content_type=infer_content_type(title, body, url),
        publish_date_valid=publish_date_valid,
    )
    if not is_valid:
        logger.info("Article %s rejected: %s", url, "; ".join(reasons))
    return result
