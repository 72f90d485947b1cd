"""Phase orchestration shared by the HTTP API and the CLI.

A discovery session moves through three phases:

* phase 1 (:meth:`DiscoveryPipeline.start_discovery`) finds candidate links
  on the organization's news page and stores them for review;
* phase 2 (:meth:`DiscoveryPipeline.select_urls` and
  :meth:`DiscoveryPipeline.scrape_session`) extracts and classifies the
  selected links in scheduler chunks;
* phase 3 (:meth:`DiscoveryPipeline.finalize_session`) turns scraped
  content into Article rows.

Bulk scraping and the automated pipeline reuse the same building blocks.
Every public operation returns a camelCase dict that the API serves as-is
and the CLI prints.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable, Iterable, Optional
from urllib.parse import urlparse

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src import config
from src.crawler.discovery import discover_urls, manual_links
from src.crawler.extraction import ContentExtractor
from src.crawler.fetcher import RateLimitedFetcher
from src.crawler.scheduling import (
    STATUS_DUPLICATE,
    STATUS_FAILED,
    STATUS_SUCCESS,
    BatchOutcome,
    BatchScheduler,
    ChunkReport,
    ItemOutcome,
)
from src.models import (
    Article,
    DiscoveredUrl,
    DiscoveryBatch,
    DiscoverySession,
    Organization,
    PipelineRun,
    ScrapedContent,
    utcnow,
)
from src.models.database import (
    DatabaseManager,
    _commit_with_retry,
    to_persistence_error,
)
from src.pipeline.classifier import (
    Classifier,
    legacy_sentiment,
    organization_label,
    relevance_tier,
)
from src.pipeline.finalizer import (
    UNTITLED,
    Finalizer,
    create_article_records,
    find_article_by_url,
)
from src.pipeline.state import (
    ArticleStatus,
    ScrapeStatus,
    SessionStatus,
    advance_scrape_status,
    fail,
    is_terminal,
    session_guard,
    transition,
)
from src.pipeline.validation import validate_article

logger = logging.getLogger(__name__)

DEFAULT_BATCH_DELAY_MS = 2000
DEFAULT_RESUME_LIMIT = 10

RESUMABLE_BATCH_STATUSES = (
    SessionStatus.DISCOVERING.value,
    SessionStatus.SCRAPING.value,
)

NO_URLS_DISCOVERED = "No URLs discovered"
NOTHING_SCRAPED = "No articles scraped successfully"

RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"


class NotFound(Exception):
    """A requested organization, session or content row does not exist."""

    pass


class InvalidRequest(Exception):
    """The request cannot be carried out in the current state."""

    pass


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_discovered_url(row: DiscoveredUrl) -> dict[str, Any]:
    return {
        "id": row.id,
        "url": row.url,
        "urlType": row.url_type,
        "domain": row.domain,
        "titlePreview": row.title_preview,
        "position": row.position,
        "selectedForScraping": bool(row.selected_for_scraping),
        "scrapeStatus": row.scrape_status,
    }


def serialize_scraped_content(row: ScrapedContent) -> dict[str, Any]:
    score = row.sentiment_score
    return {
        "id": row.id,
        "discoveredUrlId": row.discovered_url_id,
        "url": row.url,
        "title": row.title,
        "summary": row.summary,
        "author": row.author,
        "publishedAt": _iso(row.published_at),
        "ogImage": row.og_image,
        "images": list(row.images or []),
        "keywords": list(row.keywords or []),
        "sentimentScore": score,
        "sentimentReasoning": row.sentiment_reasoning,
        "sentiment": legacy_sentiment(score),
        "organizationRelevance": relevance_tier(score),
        "organizationSentiment": organization_label(score),
        "extractionTier": row.extraction_tier,
        "selectedForFinalization": bool(row.selected_for_finalization),
    }


def serialize_session(record: DiscoverySession) -> dict[str, Any]:
    return {
        "id": record.id,
        "organizationId": record.organization_id,
        "newsUrl": record.news_url,
        "status": record.status,
        "totalUrls": record.total_urls,
        "selectedUrls": record.selected_urls,
        "processedUrls": record.processed_urls,
        "errorMessage": record.error_message,
        "createdAt": _iso(record.created_at),
        "completedAt": _iso(record.completed_at),
    }


def serialize_batch(batch: DiscoveryBatch) -> dict[str, Any]:
    return {
        "id": batch.id,
        "organizationId": batch.organization_id,
        "status": batch.status,
        "totalUrls": batch.total_urls,
        "processedUrls": batch.processed_urls,
        "successfulUrls": batch.successful_urls,
        "duplicateUrls": batch.duplicate_urls,
        "failedUrls": batch.failed_urls,
        "currentChunk": batch.current_chunk,
        "errorMessage": batch.error_message,
    }


def _bulk_entry(outcome: ItemOutcome) -> dict[str, Any]:
    run = outcome.value or {}
    title = run.get("title") or UNTITLED
    if outcome.status == STATUS_DUPLICATE:
        return {
            "url": outcome.item,
            "status": "duplicate",
            "message": f'Article already exists: "{title}"',
            "articleId": run.get("articleId"),
        }
    if outcome.status == STATUS_SUCCESS:
        return {
            "url": outcome.item,
            "status": "success",
            "message": f'Successfully scraped: "{title}"',
            "articleId": run.get("articleId"),
        }
    return {
        "url": outcome.item,
        "status": "error",
        "message": outcome.error or run.get("error") or "Unknown error",
    }


def _concurrency(value: int | None) -> int:
    return max(1, int(value or config.SCRAPE_CONCURRENCY))


def _delay_ms(value: int | None) -> int:
    return max(0, int(value if value is not None else DEFAULT_BATCH_DELAY_MS))


def _check_bulk_url(raw: Any) -> tuple[Optional[str], Optional[dict[str, Any]]]:
    url = raw.strip() if isinstance(raw, str) else ""
    if not url:
        return None, {"url": raw, "status": "error", "message": "Empty URL"}
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None, {"url": url, "status": "error", "message": "Invalid URL format"}
    return url, None


class DiscoveryPipeline:
    """Run the discovery phases against one database.

    Each operation opens its own session from ``db``. Scrape workers run on
    scheduler threads and open a session each.
    """

    def __init__(
        self,
        db: DatabaseManager,
        fetcher: RateLimitedFetcher,
        extractor: ContentExtractor,
        classifier: Classifier,
        finalizer: Finalizer,
        scheduler_factory: Callable[..., BatchScheduler] = BatchScheduler,
        *,
        max_urls: int | None = None,
    ):
        self.db = db
        self.fetcher = fetcher
        self.extractor = extractor
        self.classifier = classifier
        self.finalizer = finalizer
        self.scheduler_factory = scheduler_factory
        self.max_urls = max_urls if max_urls is not None else config.DISCOVERY_MAX_URLS

    @staticmethod
    def _organization(session: Session, organization_id: str) -> Organization:
        organization = session.get(Organization, organization_id)
        if organization is None:
            raise NotFound("Organization not found")
        return organization

    @staticmethod
    def _discovery_session(session: Session, session_id: str) -> DiscoverySession:
        record = session.get(DiscoverySession, session_id)
        if record is None:
            raise NotFound("Discovery session not found")
        return record

    # Phase 1

    def start_discovery(
        self,
        organization_id: str,
        news_url: str | None = None,
        manual_urls: Iterable[str] | None = None,
    ) -> dict[str, Any]:
        manual = [url for url in (manual_urls or []) if url and url.strip()]
        links = manual_links(manual) if manual else None
        if manual and not links:
            raise InvalidRequest("No valid URLs provided")

        with self.db.get_session() as session:
            organization = self._organization(session, organization_id)
            seed = (news_url or organization.news_url or "").strip()
            if links is None and not seed:
                raise InvalidRequest("Organization has no news URL configured")

            record = DiscoverySession(
                organization_id=organization.id,
                news_url=seed or "manual",
                status=SessionStatus.DISCOVERING.value,
            )
            session.add(record)
            _commit_with_retry(session)
            logger.info(
                "Started discovery session %s for %s", record.id, organization.name
            )

            with session_guard(session, record):
                if links is None:
                    known = session.execute(
                        select(Article.url).where(
                            Article.organization_id == organization.id
                        )
                    ).scalars()
                    result = discover_urls(
                        seed,
                        organization.name,
                        fetcher=self.fetcher,
                        known_urls=list(known),
                        max_urls=self.max_urls,
                    )
                    if not result.success:
                        fail(record, result.error or "Discovery failed")
                        _commit_with_retry(session)
                        return {
                            "success": False,
                            "sessionId": record.id,
                            "status": record.status,
                            "error": record.error_message,
                        }
                    links = result.urls

                preselect = bool(manual)
                for position, link in enumerate(links):
                    session.add(
                        DiscoveredUrl(
                            discovery_session_id=record.id,
                            url=link.url,
                            url_type=link.url_type,
                            domain=link.domain,
                            title_preview=link.title_preview,
                            position=position,
                            selected_for_scraping=preselect,
                        )
                    )
                record.total_urls = len(links)
                record.selected_urls = len(links) if preselect else 0
                transition(record, SessionStatus.READY_FOR_REVIEW)
                if preselect:
                    transition(record, SessionStatus.REVIEWED)
                _commit_with_retry(session)

            rows = list(record.discovered_urls)
            return {
                "success": True,
                "sessionId": record.id,
                "status": record.status,
                "totalUrls": record.total_urls,
                "newsCount": sum(1 for link in links if not link.is_post),
                "postCount": sum(1 for link in links if link.is_post),
                "urls": [serialize_discovered_url(row) for row in rows],
            }

    def get_session(self, session_id: str) -> dict[str, Any]:
        with self.db.get_session() as session:
            record = self._discovery_session(session, session_id)
            data = serialize_session(record)
            data["discoveredUrls"] = [
                serialize_discovered_url(row) for row in record.discovered_urls
            ]
            data["scrapedContent"] = [
                serialize_scraped_content(row) for row in record.scraped_contents
            ]
            return {"success": True, "session": data}

    def list_sessions(self, organization_id: str) -> dict[str, Any]:
        with self.db.get_session() as session:
            records = session.execute(
                select(DiscoverySession)
                .where(DiscoverySession.organization_id == organization_id)
                .order_by(DiscoverySession.created_at.desc())
            ).scalars()
            sessions = []
            for record in records:
                data = serialize_session(record)
                data["scrapedArticles"] = len(record.scraped_contents)
                sessions.append(data)
            return {"success": True, "sessions": sessions}

    # Phase 2

    def select_urls(self, session_id: str, url_ids: Iterable[str]) -> dict[str, Any]:
        wanted = set(url_ids or [])
        with self.db.get_session() as session:
            record = self._discovery_session(session, session_id)
            status = SessionStatus(record.status)
            if status not in (SessionStatus.READY_FOR_REVIEW, SessionStatus.REVIEWED):
                raise InvalidRequest(
                    f"Cannot change URL selection while session is {status.value}"
                )

            selected = 0
            for row in record.discovered_urls:
                row.selected_for_scraping = row.id in wanted
                if row.selected_for_scraping:
                    selected += 1
            record.selected_urls = selected

            target = (
                SessionStatus.REVIEWED if selected else SessionStatus.READY_FOR_REVIEW
            )
            if status is not target:
                transition(record, target)
            _commit_with_retry(session)
            return {
                "success": True,
                "sessionId": record.id,
                "status": record.status,
                "selectedCount": selected,
            }

    def scrape_session(self, session_id: str, select_all: bool = False) -> dict[str, Any]:
        """Scrape the selected pending URLs of a reviewed session.

        A session left in ``scraping`` by an interrupted run is resumed:
        URLs caught mid-scrape are marked failed and the remaining pending
        selections are scraped.
        """
        with self.db.get_session() as session:
            record = self._discovery_session(session, session_id)
            status = SessionStatus(record.status)
            resuming = status is SessionStatus.SCRAPING
            if not resuming and status not in (
                SessionStatus.READY_FOR_REVIEW,
                SessionStatus.REVIEWED,
            ):
                raise InvalidRequest(
                    f"Session is {status.value}; URLs can only be scraped after review"
                )

            rows = list(record.discovered_urls)
            if resuming:
                for row in rows:
                    if row.scrape_status == ScrapeStatus.SCRAPING.value:
                        advance_scrape_status(row, ScrapeStatus.FAILED)
            elif select_all:
                if not rows:
                    raise InvalidRequest("No URLs discovered to scrape")
                for row in rows:
                    if row.scrape_status == ScrapeStatus.PENDING.value:
                        row.selected_for_scraping = True
                record.selected_urls = sum(1 for row in rows if row.selected_for_scraping)

            targets = [
                row.id
                for row in rows
                if row.selected_for_scraping
                and row.scrape_status == ScrapeStatus.PENDING.value
            ]
            if not targets and not resuming:
                raise InvalidRequest("No URLs selected for scraping")

            organization_name = record.organization.name
            if status is SessionStatus.READY_FOR_REVIEW:
                transition(record, SessionStatus.REVIEWED)
            if not resuming:
                transition(record, SessionStatus.SCRAPING)
            _commit_with_retry(session)
            already_processed = record.processed_urls if resuming else 0

            def checkpoint(report: ChunkReport) -> None:
                record.processed_urls = min(
                    record.total_urls,
                    max(record.processed_urls, already_processed + report.processed),
                )
                _commit_with_retry(session)

            with session_guard(session, record):
                scheduler = self.scheduler_factory()
                outcome = scheduler.run(
                    targets,
                    lambda url_id: self._scrape_url(url_id, organization_name),
                    on_chunk_complete=checkpoint,
                )
                scraped_total = session.scalar(
                    select(func.count(DiscoveredUrl.id))
                    .where(DiscoveredUrl.discovery_session_id == record.id)
                    .where(DiscoveredUrl.scrape_status == ScrapeStatus.SCRAPED.value)
                )
                if scraped_total:
                    transition(record, SessionStatus.ANALYZING)
                else:
                    fail(record, NOTHING_SCRAPED)
                _commit_with_retry(session)

            logger.info(
                "Session %s scraped %d URLs (%d failed)",
                record.id,
                outcome.successful,
                outcome.failed,
            )
            result = {
                "success": bool(scraped_total),
                "sessionId": record.id,
                "status": record.status,
                "scrapedCount": outcome.successful,
                "failedCount": outcome.failed,
                "totalProcessed": outcome.processed,
            }
            if not scraped_total:
                result["error"] = record.error_message
            return result

    def fail_session(self, session_id: str, message: str) -> dict[str, Any]:
        """Drive a non-terminal session to ``failed`` with ``message``."""
        with self.db.get_session() as session:
            record = self._discovery_session(session, session_id)
            if is_terminal(record.status):
                raise InvalidRequest(f"Session is already {record.status}")
            fail(record, message)
            _commit_with_retry(session)
            return {
                "success": True,
                "sessionId": record.id,
                "status": record.status,
                "error": record.error_message,
            }

    def _scrape_url(self, url_id: str, organization_name: str) -> ItemOutcome:
        with self.db.get_session() as session:
            row = session.get(DiscoveredUrl, url_id)
            if row is None:
                return ItemOutcome(url_id, STATUS_FAILED, error="Discovered URL not found")
            advance_scrape_status(row, ScrapeStatus.SCRAPING)
            _commit_with_retry(session)

            try:
                result = self.extractor.extract(row.url, organization_name)
                if not result.success:
                    advance_scrape_status(row, ScrapeStatus.FAILED)
                    _commit_with_retry(session)
                    return ItemOutcome(url_id, STATUS_FAILED, error=result.error)
                classification = self.classifier.classify(
                    result.body, organization_name, result.title
                )
            except Exception:
                advance_scrape_status(row, ScrapeStatus.FAILED)
                _commit_with_retry(session)
                raise

            try:
                content = session.execute(
                    select(ScrapedContent).where(
                        ScrapedContent.discovered_url_id == row.id
                    )
                ).scalar_one_or_none()
                if content is None:
                    content = ScrapedContent(
                        discovered_url_id=row.id,
                        discovery_session_id=row.discovery_session_id,
                    )
                    session.add(content)
                content.title = result.title
                content.summary = result.summary
                content.markdown_content = result.body
                content.keywords = list(result.keywords)
                content.author = result.author
                content.published_at = result.publish_date
                content.og_image = result.og_image
                content.images = list(result.images)
                content.sentiment_score = (
                    int(classification.score)
                    if classification.score is not None
                    else None
                )
                content.sentiment_reasoning = classification.reasoning
                content.extraction_tier = result.tier
                advance_scrape_status(row, ScrapeStatus.SCRAPED)
                _commit_with_retry(session)
            except SQLAlchemyError as exc:
                session.rollback()
                error = to_persistence_error(exc)
                logger.warning(
                    "Could not store content for %s (%s): %s",
                    row.url,
                    error.category,
                    exc,
                )
                advance_scrape_status(row, ScrapeStatus.FAILED)
                _commit_with_retry(session)
                return ItemOutcome(url_id, STATUS_FAILED, error=error.message)

            return ItemOutcome(url_id, STATUS_SUCCESS, value=content.id)

    def get_scraped_content(self, session_id: str) -> dict[str, Any]:
        with self.db.get_session() as session:
            record = self._discovery_session(session, session_id)
            contents = session.execute(
                select(ScrapedContent)
                .where(ScrapedContent.discovery_session_id == record.id)
                .order_by(ScrapedContent.created_at)
            ).scalars()
            return {
                "success": True,
                "sessionId": record.id,
                "status": record.status,
                "scrapedContent": [serialize_scraped_content(c) for c in contents],
            }

    # Phase 3

    def finalize_session(
        self,
        session_id: str,
        content_ids: Iterable[str] | None = None,
        select_all: bool = False,
    ) -> dict[str, Any]:
        content_ids = list(content_ids or [])
        if not select_all and not content_ids:
            raise InvalidRequest(
                "Either selectAll=true or selectedContentIds array is required"
            )

        with self.db.get_session() as session:
            record = self._discovery_session(session, session_id)
            status = SessionStatus(record.status)
            if status not in (SessionStatus.ANALYZING, SessionStatus.COMPLETED):
                raise InvalidRequest(
                    f"Session is {record.status}; only analyzed sessions can be finalized"
                )

            query = select(ScrapedContent).where(
                ScrapedContent.discovery_session_id == record.id
            )
            if not select_all:
                query = query.where(ScrapedContent.id.in_(content_ids))
            contents = list(
                session.execute(query.order_by(ScrapedContent.created_at)).scalars()
            )
            if not contents:
                raise NotFound("No scraped content found to finalize")

            organization = record.organization
            # A completed session is re-finalized in place; its status stays.
            refinalizing = status is SessionStatus.COMPLETED
            if not refinalizing:
                transition(record, SessionStatus.FINALIZING)
                _commit_with_retry(session)

            with session_guard(session, record):
                report = self.finalizer.finalize(session, contents, organization)
                if not refinalizing:
                    transition(record, SessionStatus.COMPLETED)
                _commit_with_retry(session)

            return {
                "success": True,
                "sessionId": record.id,
                "status": record.status,
                "message": f"Successfully finalized {report.success_count} articles",
                "successCount": report.success_count,
                "failedCount": report.failed_count,
                "totalProcessed": report.total_processed,
                "createdArticles": report.created_articles,
                "updatedArticles": report.updated_articles,
                "articleIds": report.article_ids,
                "errors": report.errors,
            }

    # Bulk scrape

    @staticmethod
    def _check_batch_request(
        organization_id: str, urls: Iterable[Any]
    ) -> tuple[list[Any], list[str], list[dict[str, Any]]]:
        urls = list(urls or [])
        if not organization_id or not urls:
            raise InvalidRequest("Organization ID and URLs array are required")
        valid: list[str] = []
        invalid: list[dict[str, Any]] = []
        for raw in urls:
            url, problem = _check_bulk_url(raw)
            if problem is not None:
                invalid.append(problem)
            else:
                valid.append(url)
        return urls, valid, invalid

    @staticmethod
    def _new_batch(organization: Organization, valid: list[str]) -> DiscoveryBatch:
        return DiscoveryBatch(
            organization_id=organization.id,
            status=SessionStatus.DISCOVERING.value,
            total_urls=len(valid),
            discovered_urls=list(valid),
        )

    def bulk_scrape(
        self,
        organization_id: str,
        urls: Iterable[Any],
        concurrency: int | None = None,
        batch_delay_ms: int | None = DEFAULT_BATCH_DELAY_MS,
    ) -> dict[str, Any]:
        urls, valid, invalid = self._check_batch_request(organization_id, urls)
        concurrency = _concurrency(concurrency)
        delay_ms = _delay_ms(batch_delay_ms)

        with self.db.get_session() as session:
            organization = self._organization(session, organization_id)
            batch = self._new_batch(organization, valid)
            session.add(batch)
            _commit_with_retry(session)

            outcome = self._process_batch(session, batch, concurrency, delay_ms)

            entries = [_bulk_entry(item) for item in outcome.outcomes]
            finished = [entry for entry in entries if entry["status"] != "error"]
            errors = [entry for entry in entries if entry["status"] == "error"]
            return {
                "success": True,
                "batchId": batch.id,
                "batch": serialize_batch(batch),
                "results": invalid + finished + errors,
                "summary": {
                    "total": len(urls),
                    "success": outcome.successful,
                    "duplicate": outcome.duplicate,
                    "error": outcome.failed + len(invalid),
                    "concurrency_used": concurrency,
                    "batch_delay_used": delay_ms,
                },
            }

    def _process_batch(
        self,
        session: Session,
        batch: DiscoveryBatch,
        concurrency: int,
        delay_ms: int,
    ) -> BatchOutcome:
        """Scrape every batch URL that has no recorded result yet.

        Counters and ``processing_results`` are committed after each chunk,
        so an interrupted batch picks up after its last finished chunk.
        """
        audit: list[dict[str, Any]] = list(
            (batch.processing_results or {}).get("results") or []
        )
        done = {entry.get("url") for entry in audit}
        pending = [url for url in batch.discovered_urls or [] if url not in done]
        processed, successful, duplicate, failed = (
            batch.processed_urls or 0,
            batch.successful_urls or 0,
            batch.duplicate_urls or 0,
            batch.failed_urls or 0,
        )
        organization_id = batch.organization_id

        def checkpoint(report: ChunkReport) -> None:
            batch.processed_urls = min(batch.total_urls, processed + report.processed)
            batch.successful_urls = successful + report.successful
            batch.duplicate_urls = duplicate + report.duplicate
            batch.failed_urls = failed + report.failed
            batch.current_chunk = report.index
            audit.extend(_bulk_entry(item) for item in report.outcomes)
            batch.processing_results = {
                "chunks": report.total_chunks,
                "results": list(audit),
            }
            _commit_with_retry(session)

        with session_guard(session, batch):
            if SessionStatus(batch.status) is SessionStatus.DISCOVERING:
                transition(batch, SessionStatus.SCRAPING)
                _commit_with_retry(session)
            scheduler = self.scheduler_factory(
                chunk_size=concurrency,
                concurrency=concurrency,
                inter_chunk_delay=delay_ms / 1000.0,
            )
            outcome = scheduler.run(
                pending,
                lambda url: self._bulk_item(url, organization_id),
                on_chunk_complete=checkpoint,
            )
            if batch.processed_urls and batch.failed_urls == batch.processed_urls:
                fail(batch, "All URLs failed to scrape")
            else:
                transition(batch, SessionStatus.COMPLETED)
            _commit_with_retry(session)
        return outcome

    def _bulk_item(self, url: str, organization_id: str) -> ItemOutcome:
        run = self.run_single_url(url, organization_id)
        if run["duplicate"]:
            return ItemOutcome(url, STATUS_DUPLICATE, value=run)
        if run["success"]:
            return ItemOutcome(url, STATUS_SUCCESS, value=run)
        return ItemOutcome(url, STATUS_FAILED, value=run, error=run.get("error"))

    # Queued and stalled batches

    def queue_batch(self, organization_id: str, urls: Iterable[Any]) -> dict[str, Any]:
        """Store a batch of URLs for a later :meth:`resume_batches` run."""
        _urls, valid, invalid = self._check_batch_request(organization_id, urls)
        if not valid:
            raise InvalidRequest("No valid URLs provided")
        with self.db.get_session() as session:
            organization = self._organization(session, organization_id)
            batch = self._new_batch(organization, valid)
            session.add(batch)
            _commit_with_retry(session)
            logger.info(
                "Queued batch %s with %d URLs for %s",
                batch.id,
                batch.total_urls,
                organization.name,
            )
            return {
                "success": True,
                "batchId": batch.id,
                "batch": serialize_batch(batch),
                "results": invalid,
            }

    def get_batch(self, batch_id: str) -> dict[str, Any]:
        with self.db.get_session() as session:
            batch = session.get(DiscoveryBatch, batch_id)
            if batch is None:
                raise NotFound("Batch not found")
            data = serialize_batch(batch)
            data["urls"] = list(batch.discovered_urls or [])
            data["results"] = list((batch.processing_results or {}).get("results") or [])
            return {"success": True, "batch": data}

    def list_batches(self, organization_id: str | None = None) -> dict[str, Any]:
        """List batches that are queued or were interrupted mid-scrape."""
        with self.db.get_session() as session:
            rows = session.execute(
                self._resumable_batches(organization_id)
            ).all()
            batches = []
            for batch, organization_name in rows:
                data = serialize_batch(batch)
                data["organizationName"] = organization_name
                data["createdAt"] = _iso(batch.created_at)
                data["urls"] = list(batch.discovered_urls or [])
                batches.append(data)
            return {
                "success": True,
                "summary": {
                    "totalBatches": len(batches),
                    "totalUrls": sum(item["totalUrls"] for item in batches),
                    "organizationCount": len(
                        {item["organizationId"] for item in batches}
                    ),
                },
                "batches": batches,
            }

    @staticmethod
    def _resumable_batches(organization_id: str | None = None):
        query = (
            select(DiscoveryBatch, Organization.name)
            .join(Organization, Organization.id == DiscoveryBatch.organization_id)
            .where(DiscoveryBatch.status.in_(RESUMABLE_BATCH_STATUSES))
            .order_by(DiscoveryBatch.created_at, DiscoveryBatch.id)
        )
        if organization_id:
            query = query.where(DiscoveryBatch.organization_id == organization_id)
        return query

    def resume_batches(
        self,
        batch_ids: Iterable[str] | None = None,
        concurrency: int | None = None,
        batch_delay_ms: int | None = DEFAULT_BATCH_DELAY_MS,
        limit: int = DEFAULT_RESUME_LIMIT,
    ) -> dict[str, Any]:
        """Process queued or stalled batches, oldest first.

        Without ``batch_ids`` at most ``limit`` batches are taken. A batch
        with no URLs is completed without scraping.
        """
        concurrency = _concurrency(concurrency)
        delay_ms = _delay_ms(batch_delay_ms)
        batch_ids = list(batch_ids or [])
        with self.db.get_session() as session:
            query = self._resumable_batches()
            if batch_ids:
                query = query.where(DiscoveryBatch.id.in_(batch_ids))
            else:
                query = query.limit(limit)
            targets = [(batch.id, name) for batch, name in session.execute(query).all()]

        if not targets:
            return {
                "success": True,
                "message": "No batches ready for processing",
                "processed": 0,
                "results": [],
            }

        results = [
            self._resume_one(batch_id, name, concurrency, delay_ms)
            for batch_id, name in targets
        ]
        summary = {
            "batchesProcessed": len(results),
            "successfulBatches": sum(1 for r in results if r["status"] == "completed"),
            "failedBatches": sum(1 for r in results if r["status"] == "failed"),
            "totalUrlsProcessed": sum(r["urlsProcessed"] for r in results),
            "totalSuccessful": sum(r["successful"] for r in results),
            "totalDuplicates": sum(r["duplicates"] for r in results),
            "totalFailed": sum(r["failed"] for r in results),
        }
        logger.info("Batch processing completed: %s", summary)
        return {
            "success": True,
            "message": f"Processed {len(results)} batches",
            "summary": summary,
            "results": results,
        }

    def _resume_one(
        self, batch_id: str, organization_name: str, concurrency: int, delay_ms: int
    ) -> dict[str, Any]:
        result: dict[str, Any] = {
            "batchId": batch_id,
            "organizationName": organization_name,
            "status": SessionStatus.FAILED.value,
            "urlsProcessed": 0,
            "successful": 0,
            "duplicates": 0,
            "failed": 0,
        }
        with self.db.get_session() as session:
            batch = session.get(DiscoveryBatch, batch_id)
            if not batch.discovered_urls:
                logger.warning("Skipping %s: no URLs to process", organization_name)
                if SessionStatus(batch.status) is SessionStatus.DISCOVERING:
                    transition(batch, SessionStatus.SCRAPING)
                transition(batch, SessionStatus.COMPLETED)
                _commit_with_retry(session)
                result["status"] = batch.status
                result["message"] = "No URLs to process"
                return result

            logger.info(
                "Processing batch %s for %s (%d URLs)",
                batch.id,
                organization_name,
                len(batch.discovered_urls),
            )
            try:
                self._process_batch(session, batch, concurrency, delay_ms)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Batch %s for %s failed", batch_id, organization_name)
                result["failed"] = len(batch.discovered_urls or [])
                result["message"] = str(exc) or type(exc).__name__
                result["error"] = True
                return result

            result.update(
                status=batch.status,
                urlsProcessed=batch.processed_urls,
                successful=batch.successful_urls,
                duplicates=batch.duplicate_urls,
                failed=batch.failed_urls,
                message=(
                    f"Successfully processed {batch.successful_urls} articles"
                    if batch.status == SessionStatus.COMPLETED.value
                    else batch.error_message
                ),
            )
            return result

    # Single-URL pipeline

    def run_single_url(self, url: str, organization_id: str) -> dict[str, Any]:
        """Extract, classify, validate and store one URL.

        A :class:`PipelineRun` row records the step reached after each stage;
        its ``steps_data["step"]`` ends as one of ``completed_success``,
        ``completed_rejected_saved``, ``completed_duplicate``,
        ``extraction_failed`` or ``database_save_failed``.
        """
        started = time.monotonic()
        with self.db.get_session() as session:
            organization = self._organization(session, organization_id)
            state: dict[str, Any] = {"url": url, "organizationId": organization.id}
            run = PipelineRun(
                organization_id=organization.id,
                input_url=url,
                status=RUN_RUNNING,
                steps_data={**state, "step": "started"},
            )
            session.add(run)
            _commit_with_retry(session)

            def record_step(step: str, **values: Any) -> None:
                state.update(values)
                run.steps_data = {**state, "step": step}
                _commit_with_retry(session)

            def finish(
                step: str,
                *,
                success: bool,
                article_id: str | None = None,
                title: str | None = None,
                error: str | None = None,
                category: str | None = None,
                duplicate: bool = False,
            ) -> dict[str, Any]:
                run.status = RUN_COMPLETED if success else RUN_FAILED
                run.success = success
                run.article_id = article_id
                run.error_message = error
                run.error_category = category
                run.completed_at = utcnow()
                run.duration_ms = int((time.monotonic() - started) * 1000)
                record_step(step)
                return {
                    "success": success,
                    "duplicate": duplicate,
                    "articleId": article_id,
                    "title": title,
                    "error": error,
                    "runId": run.id,
                }

            existing = find_article_by_url(session, url)
            if existing is not None:
                logger.info("Article already exists for %s", url)
                return finish(
                    "completed_duplicate",
                    success=True,
                    article_id=existing.id,
                    title=existing.title,
                    duplicate=True,
                )

            result = self.extractor.extract(url, organization.name)
            if not result.success:
                record_step("extraction_failed", errors=list(result.errors))
                return finish(
                    "extraction_failed", success=False, error=result.error
                )
            record_step(
                "extraction_complete",
                tier=result.tier,
                title=result.title,
                imageCount=len(result.images),
            )

            classification = self.classifier.classify(
                result.body, organization.name, result.title
            )
            score = int(classification.score) if classification.score is not None else None
            record_step(
                "classification_complete",
                score=score,
                sentiment=classification.sentiment,
                relevance=classification.relevance,
            )

            validation = validate_article(result, classification, url)
            record_step(
                "validation_complete",
                isValid=validation.is_valid,
                reasons=list(validation.reasons),
                contentType=validation.content_type,
            )

            og_image = result.og_image or (result.images[0] if result.images else None)
            saved: list[Article] = []

            def save_article() -> None:
                saved.append(
                    create_article_records(
                        session,
                        organization_id=organization.id,
                        url=url,
                        title=result.title or UNTITLED,
                        summary=result.summary,
                        content=result.body,
                        author=result.author,
                        published_at=result.publish_date,
                        og_image=og_image,
                        images=list(result.images),
                        keywords=list(result.keywords),
                        score=score,
                        validation=validation,
                        meta={
                            "pipeline_run_id": run.id,
                            "extraction_tier": result.tier,
                            "sentiment_reasoning": classification.reasoning,
                        },
                    )
                )

            try:
                save_article()
                _commit_with_retry(session, replay=save_article)
                article = saved[-1]
            except SQLAlchemyError as exc:
                session.rollback()
                error = to_persistence_error(exc)
                logger.warning(
                    "Saving article for %s failed (%s): %s", url, error.category, exc
                )
                return finish(
                    "database_save_failed",
                    success=False,
                    error=error.message,
                    category=error.category,
                )

            step = (
                "completed_success"
                if article.status == ArticleStatus.DRAFT.value
                else "completed_rejected_saved"
            )
            logger.info("Stored article %s for %s (%s)", article.id, url, article.status)
            return finish(
                step, success=True, article_id=article.id, title=article.title
            )

    # Automated pipeline

    def _eligible_organizations(
        self, session: Session, organization_ids: Iterable[str] | None
    ) -> list[Organization]:
        published = select(Article.organization_id).where(
            Article.status == ArticleStatus.PUBLISHED.value
        )
        query = (
            select(Organization)
            .where(Organization.news_url.is_not(None))
            .where(Organization.news_url != "")
            .where(Organization.id.not_in(published))
            .order_by(Organization.name)
        )
        if organization_ids:
            query = query.where(Organization.id.in_(list(organization_ids)))
        return list(session.execute(query).scalars())

    def run_automated(self, organization_ids: Iterable[str] | None = None) -> dict[str, Any]:
        """Run all three phases for every eligible organization.

        An organization is eligible when it has a news URL and no published
        articles. Later phases are skipped when an earlier one produces
        nothing.
        """
        started = time.monotonic()
        with self.db.get_session() as session:
            targets = [
                (org.id, org.name)
                for org in self._eligible_organizations(session, organization_ids)
            ]
        if not targets:
            return {
                "success": True,
                "message": "No eligible organizations found",
                "results": [],
                "summary": {
                    "processed": 0,
                    "successful": 0,
                    "failed": 0,
                    "totalArticlesCreated": 0,
                    "totalDuration": 0,
                },
            }

        results = [self._automate_one(org_id, name) for org_id, name in targets]
        successful = sum(1 for result in results if result["success"])
        return {
            "success": True,
            "message": f"Processed {len(results)} organizations",
            "results": results,
            "summary": {
                "processed": len(results),
                "successful": successful,
                "failed": len(results) - successful,
                "totalArticlesCreated": sum(
                    result["phase3"]["articlesCreated"] for result in results
                ),
                "totalDuration": int((time.monotonic() - started) * 1000),
            },
        }

    def _automate_one(self, organization_id: str, name: str) -> dict[str, Any]:
        started = time.monotonic()
        result: dict[str, Any] = {
            "organizationId": organization_id,
            "organizationName": name,
            "success": False,
            "phase1": {"success": False, "urlsDiscovered": 0, "error": None},
            "phase2": {"articlesScraped": 0},
            "phase3": {"articlesCreated": 0},
            "error": None,
        }
        logger.info("Automated pipeline starting for %s", name)
        try:
            phase1 = self.start_discovery(organization_id)
            result["phase1"] = {
                "success": phase1["success"],
                "urlsDiscovered": phase1.get("totalUrls", 0),
                "error": phase1.get("error"),
            }
            if not phase1["success"]:
                result["error"] = phase1.get("error")
            elif not phase1["totalUrls"]:
                self.fail_session(phase1["sessionId"], NO_URLS_DISCOVERED)
                result["error"] = NO_URLS_DISCOVERED
            else:
                phase2 = self.scrape_session(phase1["sessionId"], select_all=True)
                result["phase2"]["articlesScraped"] = phase2["scrapedCount"]
                if not phase2["success"]:
                    result["error"] = NOTHING_SCRAPED
                else:
                    phase3 = self.finalize_session(phase1["sessionId"], select_all=True)
                    result["phase3"]["articlesCreated"] = len(
                        phase3["createdArticles"]
                    )
                    result["success"] = True
        except (NotFound, InvalidRequest) as exc:
            result["error"] = str(exc)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Automated pipeline failed for %s", name)
            result["error"] = str(exc)
        result["duration"] = int((time.monotonic() - started) * 1000)
        return result
