"""Client for the structured content-extraction service.

Two modes are supported against a Firecrawl-compatible API:

* synchronous ``POST /scrape`` with an ``extract`` schema, used by the
  extraction chain for single URLs;
* asynchronous ``POST /extract`` job submission followed by
  ``GET /extract/{id}`` polling, driven by :class:`ExtractJobPoller`.

Every call goes through the shared :class:`RateLimitedFetcher`, so service
failures come back as values exactly like page fetch failures.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from src import config
from src.crawler.fetcher import RateLimitedFetcher
from src.crawler.utils import mask_secret

logger = logging.getLogger(__name__)

ARTICLE_SCHEMA_VERSION = "2025-09"

ARTICLE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "title": {
            "type": "string",
            "description": "The main title/headline of the article",
        },
        "summary": {
            "type": "string",
            "description": "A concise summary of the article's main points",
        },
        "publish_date": {
            "type": "string",
            "description": "Publication date (YYYY-MM-DD format preferred)",
        },
        "author": {
            "type": "string",
            "description": "The article author's name, if available",
        },
        "main_image_url": {
            "type": "string",
            "description": "The main article image URL",
        },
        "images": {
            "type": "array",
            "items": {"type": "string"},
            "description": "All image URLs on the page usable as article images",
        },
        "keywords": {
            "type": "array",
            "items": {"type": "string"},
            "description": "5-10 relevant keywords or topics from the article",
        },
        "sentiment": {
            "type": "string",
            "enum": ["positive", "neutral", "negative"],
            "description": "Overall sentiment/tone of the article",
        },
        "content": {
            "type": "string",
            "description": "The full article content in clean text format",
        },
        "body_markdown": {
            "type": "string",
            "description": (
                "Only the main article body in markdown, excluding title and "
                "metadata"
            ),
        },
    },
    "required": ["title", "summary"],
}


@dataclass
class ServiceResult:
    """Outcome of a structured extraction request."""

    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    markdown: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class JobStatus:
    """One poll of an asynchronous extraction job."""

    state: str  # 'processing', 'completed' or 'failed'
    data: list[dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None


class PollState(str, Enum):
    """States of the bounded job poller."""

    PENDING = "pending"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class PollOutcome:
    state: PollState
    attempts: int
    data: list[dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None
    elapsed: float = 0.0


class ExtractJobPoller:
    """Poll a job until it completes, fails, or a bound is hit.

    Two bounds apply: an attempt counter and a wall-clock deadline. Whichever
    is reached first ends the poll with ``TIMED_OUT``.
    """

    def __init__(
        self,
        max_attempts: int | None = None,
        poll_interval: float | None = None,
        timeout: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.max_attempts = (
            max_attempts if max_attempts is not None else config.EXTRACT_JOB_MAX_ATTEMPTS
        )
        self.poll_interval = (
            poll_interval
            if poll_interval is not None
            else config.EXTRACT_JOB_POLL_INTERVAL
        )
        self.timeout = timeout if timeout is not None else config.EXTRACT_JOB_TIMEOUT
        self._clock = clock
        self._sleep = sleep
        self.state = PollState.PENDING

    def run(self, check: Callable[[], JobStatus]) -> PollOutcome:
        started = self._clock()
        deadline = started + self.timeout
        attempts = 0
        self.state = PollState.PENDING

        while True:
            if attempts >= self.max_attempts:
                return self._finish(
                    PollState.TIMED_OUT,
                    attempts,
                    started,
                    error=f"Job still running after {attempts} polls",
                )
            remaining = deadline - self._clock()
            if remaining <= 0:
                return self._finish(
                    PollState.TIMED_OUT,
                    attempts,
                    started,
                    error=f"Job timed out after {self.timeout:.0f}s",
                )

            self._sleep(min(self.poll_interval, remaining))
            attempts += 1
            self.state = PollState.POLLING

            try:
                status = check()
            except Exception as exc:  # noqa: BLE001
                logger.exception("Polling error on attempt %d", attempts)
                return self._finish(
                    PollState.FAILED, attempts, started, error=f"Polling error: {exc}"
                )

            if status.state == "completed":
                return self._finish(
                    PollState.COMPLETED, attempts, started, data=status.data
                )
            if status.state == "failed":
                return self._finish(
                    PollState.FAILED, attempts, started, error=status.error
                )
            if attempts % 10 == 0:
                logger.info(
                    "Extraction job still processing (attempt %d/%d)",
                    attempts,
                    self.max_attempts,
                )

    def _finish(
        self,
        state: PollState,
        attempts: int,
        started: float,
        *,
        data: list[dict[str, Any]] | None = None,
        error: str | None = None,
    ) -> PollOutcome:
        self.state = state
        return PollOutcome(
            state=state,
            attempts=attempts,
            data=data or [],
            error=error,
            elapsed=self._clock() - started,
        )


class StructuredExtractionClient:
    """Talk to the extraction service through the shared fetcher."""

    def __init__(
        self,
        fetcher: RateLimitedFetcher,
        api_key: str | None = None,
        base_url: str | None = None,
        *,
        poller_factory: Callable[[], ExtractJobPoller] | None = None,
        service_timeout: float = 60.0,
    ) -> None:
        self.fetcher = fetcher
        self.api_key = api_key if api_key is not None else config.EXTRACTION_API_KEY
        self.base_url = (base_url or config.EXTRACTION_API_BASE).rstrip("/")
        self.poller_factory = poller_factory or ExtractJobPoller
        self.service_timeout = service_timeout

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    def extract(
        self,
        url: str,
        schema: dict[str, Any] | None = None,
        prompt: str | None = None,
    ) -> ServiceResult:
        """Synchronous structured scrape of one URL."""
        if not self.configured:
            return ServiceResult(success=False, error="EXTRACTION_API_KEY not configured")

        extract_options: dict[str, Any] = {"schema": schema or ARTICLE_SCHEMA}
        if prompt:
            extract_options["prompt"] = prompt
        payload = {
            "url": url,
            "formats": ["extract", "markdown"],
            "extract": extract_options,
            "onlyMainContent": True,
            "waitFor": 2000,
            "timeout": 30000,
        }
        logger.debug(
            "Structured extraction for %s (schema %s, key %s)",
            url,
            ARTICLE_SCHEMA_VERSION,
            mask_secret(self.api_key),
        )
        response = self.fetcher.post_json(
            f"{self.base_url}/scrape",
            payload,
            headers=self._headers(),
            timeout=self.service_timeout,
        )
        if not response.ok:
            return ServiceResult(
                success=False,
                error=f"Extraction service failed: {response.error}",
            )

        try:
            body = _json_object(response)
        except ValueError as exc:
            return ServiceResult(
                success=False, error=f"Extraction service returned invalid JSON: {exc}"
            )

        records = _as_records(body.get("data") or {})
        data = records[0] if records else {}
        extracted = data.get("extract") or data.get("json") or {}
        if not isinstance(extracted, dict):
            extracted = {}
        return ServiceResult(
            success=True,
            data=extracted,
            markdown=data.get("markdown") or "",
            metadata=data.get("metadata") or {},
        )

    def submit_job(
        self,
        url: str,
        schema: dict[str, Any] | None = None,
        prompt: str | None = None,
    ) -> tuple[Optional[str], Optional[ServiceResult]]:
        """Submit an asynchronous extraction job.

        Returns ``(job_id, None)`` when queued, or ``(None, result)`` when the
        service answered immediately or failed.
        """
        if not self.configured:
            return None, ServiceResult(
                success=False, error="EXTRACTION_API_KEY not configured"
            )

        payload = {
            "urls": [url],
            "schema": schema or ARTICLE_SCHEMA,
            "prompt": prompt
            or "Extract article information focusing on news and stories",
            "enableWebSearch": False,
        }
        response = self.fetcher.post_json(
            f"{self.base_url}/extract",
            payload,
            headers=self._headers(),
            timeout=self.service_timeout,
        )
        if not response.ok:
            return None, ServiceResult(
                success=False, error=f"Job submission failed: {response.error}"
            )
        try:
            body = _json_object(response)
        except ValueError as exc:
            return None, ServiceResult(
                success=False, error=f"Job submission returned invalid JSON: {exc}"
            )

        if body.get("id"):
            logger.info("Extraction job %s queued for %s", body["id"], url)
            return str(body["id"]), None
        if body.get("success") and body.get("data"):
            records = _as_records(body["data"])
            return None, ServiceResult(success=True, data=records[0] if records else {})
        return None, ServiceResult(
            success=False, error="Job submission returned an unexpected response"
        )

    def get_job_status(self, job_id: str) -> JobStatus:
        response = self.fetcher.fetch(
            f"{self.base_url}/extract/{job_id}",
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.service_timeout,
        )
        if not response.ok:
            return JobStatus(
                state="failed", error=f"Failed to get job status: {response.error}"
            )
        try:
            body = _json_object(response)
        except ValueError as exc:
            return JobStatus(state="failed", error=f"Invalid job status JSON: {exc}")

        status = body.get("status")
        if status == "completed" and body.get("success") and body.get("data"):
            return JobStatus(state="completed", data=_as_records(body["data"]))
        if status in ("processing", "pending", "queued"):
            return JobStatus(state="processing")
        if status == "failed":
            return JobStatus(
                state="failed",
                error=f"Extract job failed: {body.get('error') or 'Unknown error'}",
            )
        return JobStatus(state="failed", error=f"Unexpected job status: {status}")

    def extract_via_job(
        self,
        url: str,
        schema: dict[str, Any] | None = None,
        prompt: str | None = None,
    ) -> ServiceResult:
        """Submit a job for ``url`` and poll it to completion."""
        job_id, immediate = self.submit_job(url, schema, prompt)
        if immediate is not None:
            return immediate

        poller = self.poller_factory()
        outcome = poller.run(lambda: self.get_job_status(job_id))
        if outcome.state is PollState.COMPLETED and outcome.data:
            return ServiceResult(success=True, data=outcome.data[0])
        logger.warning(
            "Extraction job %s for %s ended %s after %d polls: %s",
            job_id,
            url,
            outcome.state.value,
            outcome.attempts,
            outcome.error,
        )
        return ServiceResult(
            success=False, error=outcome.error or f"Job {outcome.state.value}"
        )


def _json_object(response: Any) -> dict[str, Any]:
    """Decode a response body that must be a JSON object."""
    body = response.json()
    if not isinstance(body, dict):
        raise ValueError(f"expected a JSON object, got {type(body).__name__}")
    return body


def _as_records(data: Any) -> list[dict[str, Any]]:
    items = data if isinstance(data, list) else [data]
    return [item for item in items if isinstance(item, dict)]
