"""Turn scraped content into catalogued Article rows.

Finalization is idempotent: an Article is looked up by URL first, and an
existing row is refreshed in place (title, images, classification fields,
validation reasons) without touching its status or its write-once
RawDocument/Enrichment rows. Each item is committed on its own, so one
failing item never rolls back the others.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.models import (
    Article,
    Enrichment,
    Organization,
    RawDocument,
    ScrapedContent,
    utcnow,
)
from src.models.database import _commit_with_retry, to_persistence_error
from src.pipeline.classifier import (
    Classification,
    RelevanceScore,
    legacy_sentiment,
    organization_label,
    relevance_tier,
)
from src.pipeline.images import ImageSelector
from src.pipeline.state import ArticleStatus, change_article_status
from src.pipeline.titles import TitleFormatter
from src.pipeline.validation import ValidationResult, validate_article

logger = logging.getLogger(__name__)

MAX_ARTICLE_IMAGES = 10
UNTITLED = "Untitled Article"


@dataclass
class FinalizationReport:
    success_count: int = 0
    failed_count: int = 0
    created_articles: list[str] = field(default_factory=list)
    updated_articles: list[str] = field(default_factory=list)
    article_ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def total_processed(self) -> int:
        return self.success_count + self.failed_count


def find_article_by_url(db: Session, url: str) -> Optional[Article]:
    return db.execute(select(Article).where(Article.url == url)).scalar_one_or_none()


def classification_from_score(
    score: Optional[int], reasoning: str | None = None
) -> Classification:
    return Classification(
        score=RelevanceScore(score) if score is not None else None,
        reasoning=reasoning or "",
    )


def create_article_records(
    db: Session,
    *,
    organization_id: str,
    url: str,
    title: str,
    summary: str | None,
    content: str | None,
    author: str | None,
    published_at: datetime | None,
    og_image: str | None,
    images: list[str],
    keywords: list[str],
    score: Optional[int],
    validation: ValidationResult,
    fetched_at: datetime | None = None,
    meta: dict[str, Any] | None = None,
) -> Article:
    """Add an Article plus its RawDocument and Enrichment to ``db``.

    The caller owns the transaction.
    """
    content = content or ""
    sentiment = legacy_sentiment(score)
    article = Article(
        organization_id=organization_id,
        url=url,
        title=title,
        summary=summary or "",
        content=content,
        author=author,
        published_at=published_at,
        og_image=og_image,
        images=images[:MAX_ARTICLE_IMAGES],
        keywords=list(keywords or []),
        sentiment=sentiment,
        sentiment_score=score,
        organization_sentiment=organization_label(score),
        organization_relevance=relevance_tier(score),
        content_type=validation.content_type,
        validation_reasons=list(validation.reasons),
        status=ArticleStatus.DRAFT.value,
    )
    if not validation.is_valid:
        change_article_status(article, ArticleStatus.REJECTED)
    db.add(article)
    db.flush()

    db.add(
        RawDocument(
            article_id=article.id,
            url=url,
            text=content,
            markdown=content if "#" in content else None,
            fetched_at=fetched_at or utcnow(),
        )
    )
    db.add(
        Enrichment(
            article_id=article.id,
            title=title,
            summary=summary,
            keywords=list(keywords or []),
            sentiment=sentiment,
            author=author,
            published_at=published_at,
            meta=meta or {},
        )
    )
    return article


class Finalizer:
    def __init__(
        self,
        image_selector: ImageSelector,
        title_formatter: TitleFormatter,
        validator: Callable[..., ValidationResult] = validate_article,
    ) -> None:
        self.image_selector = image_selector
        self.title_formatter = title_formatter
        self.validator = validator

    def _images_for(
        self, scraped: ScrapedContent, title: str
    ) -> tuple[list[str], Optional[str]]:
        candidates = [url for url in (scraped.images or []) if url]
        if scraped.og_image and scraped.og_image not in candidates:
            candidates.insert(0, scraped.og_image)
        selection = self.image_selector.select(candidates, title, scraped.summary or "")
        if selection is None:
            return [], scraped.og_image
        images = selection.images[:MAX_ARTICLE_IMAGES]
        return images, selection.url or (images[0] if images else None)

    def _finalize_one(
        self, db: Session, scraped: ScrapedContent, organization: Organization
    ) -> tuple[Article, bool]:
        url = scraped.url
        if not url:
            raise ValueError(f"Scraped content {scraped.id} has no URL")

        existing = find_article_by_url(db, url)
        raw_title = scraped.title or (existing.title if existing else "")
        title = self.title_formatter.format(raw_title) or UNTITLED
        images, og_image = self._images_for(scraped, title)
        score = scraped.sentiment_score
        classification = classification_from_score(score, scraped.sentiment_reasoning)
        validation = self.validator(scraped, classification, url)

        if existing is not None:
            existing.title = title
            existing.images = images
            existing.og_image = og_image or existing.og_image
            existing.sentiment = legacy_sentiment(score)
            existing.sentiment_score = score
            existing.organization_sentiment = organization_label(score)
            existing.organization_relevance = relevance_tier(score)
            existing.validation_reasons = list(validation.reasons)
            return existing, False

        article = create_article_records(
            db,
            organization_id=organization.id,
            url=url,
            title=title,
            summary=scraped.summary,
            content=scraped.markdown_content,
            author=scraped.author,
            published_at=scraped.published_at,
            og_image=og_image,
            images=images,
            keywords=list(scraped.keywords or []),
            score=score,
            validation=validation,
            fetched_at=scraped.created_at,
            meta={
                "scraped_content_id": scraped.id,
                "extraction_tier": scraped.extraction_tier,
                "sentiment_reasoning": scraped.sentiment_reasoning,
            },
        )
        return article, True

    def _commit_item(
        self, db: Session, scraped: ScrapedContent, organization: Organization
    ) -> tuple[Article, bool]:
        """Finalize one item and commit it, replaying the item on a lock retry."""
        outcomes: list[tuple[Article, bool]] = []

        def apply() -> None:
            outcomes.append(self._finalize_one(db, scraped, organization))
            scraped.selected_for_finalization = True

        apply()
        _commit_with_retry(db, replay=apply)
        return outcomes[-1]

    def finalize(
        self,
        db: Session,
        contents: Iterable[ScrapedContent],
        organization: Organization,
    ) -> FinalizationReport:
        report = FinalizationReport()
        for scraped in contents:
            label = scraped.title or "Untitled"
            try:
                article, created = self._commit_item(db, scraped, organization)
            except SQLAlchemyError as exc:
                db.rollback()
                error = to_persistence_error(exc)
                logger.warning(
                    "Finalization failed for %s (%s): %s", label, error.category, exc
                )
                report.failed_count += 1
                report.errors.append(f"{label}: {error.message}")
                continue
            except Exception as exc:  # noqa: BLE001
                db.rollback()
                logger.exception("Finalization failed for %s", label)
                report.failed_count += 1
                report.errors.append(f"{label}: {exc}")
                continue

            report.success_count += 1
            report.article_ids.append(article.id)
            if created:
                report.created_articles.append(article.title)
            else:
                report.updated_articles.append(article.title)
            logger.info(
                "%s article %s (%s)",
                "Created" if created else "Updated",
                article.id,
                article.status,
            )
        return report
