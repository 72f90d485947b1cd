"""Article content extraction.

:class:`ContentExtractor` runs a fixed chain of tiers for each URL:

1. ``structured``: the content-extraction service with ``ARTICLE_SCHEMA``
   (synchronous scrape, or the asynchronous job mode when ``use_jobs`` is
   set);
2. ``http``: a plain fetch through the shared fetcher parsed with
   BeautifulSoup;
3. give up: ``success=False`` with a ``TotalExtractionFailure`` message.

A tier that returns no title, or content that looks like an error page,
counts as a failure and the next tier runs. Every text field is sanitised
before it leaves this module.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup, Tag

from src.crawler.fetcher import RateLimitedFetcher, TransientFetchError
from src.crawler.utils import sanitize_optional, sanitize_text
from src.pipeline.images import ImageCandidate, harvest_images, is_content_image
from src.pipeline.validation import detect_error_page, parse_date
from src.services.extraction_service import (
    ARTICLE_SCHEMA,
    ARTICLE_SCHEMA_VERSION,
    StructuredExtractionClient,
)

logger = logging.getLogger(__name__)

TIER_STRUCTURED = "structured"
TIER_HTTP = "http"

# Images under this pixel area (roughly 32x32) are icons.
MIN_IMAGE_AREA = 1000
DECORATIVE_ALT_WORDS = ("icon", "logo", "button")


class ExtractionFailure(Exception):
    """A single extraction tier could not produce a usable article."""

    pass


class ServiceExtractionFailure(ExtractionFailure):
    """Structured extraction returned no title or an error-page body."""

    pass


class TotalExtractionFailure(ExtractionFailure):
    """Every extraction tier failed for a URL."""

    pass


@dataclass
class ExtractionResult:
    url: str
    success: bool = False
    tier: Optional[str] = None
    title: Optional[str] = None
    summary: Optional[str] = None
    content: str = ""
    markdown: str = ""
    author: Optional[str] = None
    publish_date: Optional[datetime] = None
    og_image: Optional[str] = None
    images: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    sentiment: Optional[str] = None
    error: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def body(self) -> str:
        return self.markdown or self.content


def parse_article_date(value: Any, now: datetime | None = None) -> Optional[datetime]:
    """Parse a publish date, discarding values more than a day in the future."""
    parsed = parse_date(value)
    if parsed is None:
        return None
    now = now or datetime.now(timezone.utc)
    if parsed > now + timedelta(days=1):
        logger.warning("Discarding future publish date %r", value)
        return None
    return parsed


def _string_list(value: Any) -> List[str]:
    """Coerce a service field that may be a string or a list into strings."""
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [item for item in value if isinstance(item, str)]
    return []


def _absolute_image_urls(values: Any, base_url: str, limit: int) -> List[str]:
    urls: List[str] = []
    for value in _string_list(values):
        if not value.strip():
            continue
        absolute = urljoin(base_url, value.strip())
        if urlparse(absolute).scheme not in ("http", "https"):
            continue
        if absolute in urls or not is_content_image(absolute):
            continue
        urls.append(absolute)
        if len(urls) >= limit:
            break
    return urls


class ContentExtractor:
    """Extract article fields from a URL through the tier chain."""

    def __init__(
        self,
        fetcher: RateLimitedFetcher,
        extraction_service: Optional[StructuredExtractionClient] = None,
        min_content_length: int = 100,
        max_paragraphs: int = 10,
        *,
        use_jobs: bool = False,
        max_images: int = 10,
    ):
        self.fetcher = fetcher
        self.extraction_service = extraction_service
        self.min_content_length = min_content_length
        self.max_paragraphs = max_paragraphs
        self.use_jobs = use_jobs
        self.max_images = max_images

    @property
    def structured_enabled(self) -> bool:
        service = self.extraction_service
        return service is not None and getattr(service, "configured", True)

    def extract(self, url: str, organization_name: str | None = None) -> ExtractionResult:
        """Run the tier chain for ``url``; never raises for extraction problems."""
        errors: List[str] = []

        if self.structured_enabled:
            try:
                result = self._extract_structured(url, organization_name)
                logger.info("Structured extraction succeeded for %s", url)
                return result
            except (ExtractionFailure, TransientFetchError) as exc:
                errors.append(f"{TIER_STRUCTURED}: {exc}")
                logger.info("Structured extraction failed for %s: %s", url, exc)

        try:
            result = self._extract_http(url)
            result.errors = errors
            logger.info("HTTP extraction succeeded for %s", url)
            return result
        except (ExtractionFailure, TransientFetchError) as exc:
            errors.append(f"{TIER_HTTP}: {exc}")
            logger.info("HTTP extraction failed for %s: %s", url, exc)

        failure = TotalExtractionFailure(f"All extraction tiers failed for {url}")
        logger.warning("%s (%s)", failure, "; ".join(errors))
        return self._create_error_result(url, str(failure), errors)

    def _create_error_result(
        self, url: str, error_msg: str, errors: List[str]
    ) -> ExtractionResult:
        return ExtractionResult(url=url, success=False, error=error_msg, errors=errors)

    # Tier 1

    def _extract_structured(
        self, url: str, organization_name: str | None
    ) -> ExtractionResult:
        service = self.extraction_service
        if service is None:
            raise ServiceExtractionFailure(
                "No structured extraction service configured"
            )
        prompt = None
        if organization_name:
            prompt = (
                f"Extract the main article on this page and how it relates to "
                f"{organization_name}."
            )

        if self.use_jobs:
            response = service.extract_via_job(url, ARTICLE_SCHEMA, prompt)
        else:
            response = service.extract(url, ARTICLE_SCHEMA, prompt)
        if not response.success:
            raise TransientFetchError(response.error or "Extraction service failed")

        data = response.data
        title = sanitize_text(data.get("title"))
        if not title:
            raise ServiceExtractionFailure("Structured extraction returned no title")

        summary = sanitize_text(data.get("summary"))
        markdown = sanitize_text(data.get("body_markdown") or response.markdown)
        content = sanitize_text(data.get("content")) or markdown
        is_valid, reasons = detect_error_page(
            title,
            summary,
            markdown or content,
            url,
            min_content_length=self.min_content_length,
        )
        if not is_valid:
            raise ServiceExtractionFailure(f"Error page detected: {reasons[0]}")

        images = _absolute_image_urls(data.get("images"), url, self.max_images)
        main_image = sanitize_optional(data.get("main_image_url"))
        og_image = urljoin(url, main_image) if main_image else None
        if og_image is None and images:
            og_image = images[0]

        keywords = [
            sanitize_text(keyword)
            for keyword in _string_list(data.get("keywords"))
            if keyword.strip()
        ]
        return ExtractionResult(
            url=url,
            success=True,
            tier=TIER_STRUCTURED,
            title=title,
            summary=summary or None,
            content=content,
            markdown=markdown,
            author=sanitize_optional(data.get("author")),
            publish_date=parse_article_date(data.get("publish_date")),
            og_image=og_image,
            images=images,
            keywords=keywords,
            sentiment=data.get("sentiment"),
            metadata={
                "schema_version": ARTICLE_SCHEMA_VERSION,
                "service_metadata": response.metadata,
            },
        )

    # Tier 2

    def _extract_http(self, url: str) -> ExtractionResult:
        response = self.fetcher.fetch_with_retries(url)
        if not response.ok:
            raise response.error or TransientFetchError(f"Fetch failed for {url}")

        html = response.text
        soup = BeautifulSoup(html, "html.parser")

        title = sanitize_text(self._extract_title(soup))
        summary = sanitize_text(self._extract_meta_description(soup))
        author = sanitize_optional(self._extract_author(soup))
        publish_date = parse_article_date(self._extract_publish_date(soup))
        images = self._extract_images(html, url)
        og_image = self._extract_og_image(soup, url) or (images[0] if images else None)
        # Content last: it strips navigation elements from the tree.
        content = sanitize_text(self._extract_content(soup))

        if not title:
            raise ExtractionFailure("Page has no title")
        is_valid, reasons = detect_error_page(
            title, summary, content, url, min_content_length=self.min_content_length
        )
        if not is_valid:
            raise ExtractionFailure(f"Error page detected: {reasons[0]}")

        return ExtractionResult(
            url=url,
            success=True,
            tier=TIER_HTTP,
            title=title,
            summary=summary or None,
            content=content,
            markdown=content,
            author=author,
            publish_date=publish_date,
            og_image=og_image,
            images=images,
            metadata={"status_code": response.status_code},
        )

    def _extract_title(self, soup: BeautifulSoup) -> Optional[str]:
        """Extract article title."""
        og_title = soup.find("meta", property="og:title")
        if isinstance(og_title, Tag):
            content = og_title.get("content")
            if content:
                return str(content).strip()

        title_tag = soup.find("title")
        if title_tag:
            text = title_tag.get_text().strip()
            if text:
                return text

        h1_tag = soup.find("h1")
        if h1_tag:
            return h1_tag.get_text().strip()

        return None

    def _extract_meta_description(self, soup: BeautifulSoup) -> Optional[str]:
        """Extract meta description."""
        meta_desc = soup.find("meta", attrs={"name": "description"})
        if isinstance(meta_desc, Tag):
            content = meta_desc.get("content")
            if content:
                return str(content).strip()

        og_desc = soup.find("meta", property="og:description")
        if isinstance(og_desc, Tag):
            content = og_desc.get("content")
            if content:
                return str(content).strip()

        return None

    def _extract_author(self, soup: BeautifulSoup) -> Optional[str]:
        for attrs in (
            {"name": "author"},
            {"property": "article:author"},
            {"name": "article:author"},
        ):
            element = soup.find("meta", attrs=attrs)
            if isinstance(element, Tag):
                author = element.get("content")
                if author and not str(author).startswith("http"):
                    return str(author).strip()

        byline = soup.select_one('[rel="author"], .author, .byline')
        if byline:
            text = byline.get_text(" ", strip=True)
            if text:
                return text[:200]
        return None

    def _extract_publish_date(self, soup: BeautifulSoup) -> Optional[str]:
        meta_candidates = [
            {"property": "article:published_time"},
            {"name": "article:published_time"},
            {"itemprop": "datePublished"},
            {"name": "pubdate"},
            {"name": "publish-date"},
            {"name": "date"},
        ]
        for attrs in meta_candidates:
            element = soup.find("meta", attrs=attrs)
            if isinstance(element, Tag) and element.get("content"):
                return str(element.get("content"))

        time_tag = soup.find("time", attrs={"datetime": True})
        if isinstance(time_tag, Tag):
            return str(time_tag.get("datetime"))
        return None

    def _extract_og_image(self, soup: BeautifulSoup, url: str) -> Optional[str]:
        og_image = soup.find("meta", property="og:image")
        if isinstance(og_image, Tag) and og_image.get("content"):
            absolute = urljoin(url, str(og_image.get("content")).strip())
            if urlparse(absolute).scheme in ("http", "https"):
                return absolute
        return None

    def _extract_images(self, html: str, url: str) -> List[str]:
        """Content images from the page, largest first."""
        candidates: List[ImageCandidate] = []
        for candidate in harvest_images(html=html, base_url=url):
            area = candidate.area
            if 0 < area < MIN_IMAGE_AREA:
                continue
            alt = candidate.alt.lower()
            if any(word in alt for word in DECORATIVE_ALT_WORDS):
                continue
            candidates.append(candidate)
        candidates.sort(key=lambda c: c.area, reverse=True)
        return [candidate.url for candidate in candidates[: self.max_images]]

    def _extract_content(self, soup: BeautifulSoup) -> Optional[str]:
        """Extract main article content."""
        for element in soup(["script", "style", "nav", "header", "footer", "aside"]):
            element.decompose()

        paragraphs = []
        for p_tag in soup.find_all("p"):
            text = p_tag.get_text(" ", strip=True)
            if text:
                paragraphs.append(text)
            if len(paragraphs) >= self.max_paragraphs:
                break
        text = "\n\n".join(paragraphs)
        if len(text) >= self.min_content_length:
            return text

        content_selectors = [
            "article",
            '[role="main"]',
            ".article-content",
            ".post-content",
            ".entry-content",
            ".content",
            ".article-body",
            "main",
        ]
        for selector in content_selectors:
            content_element = soup.select_one(selector)
            if content_element:
                container_text = content_element.get_text(separator=" ", strip=True)
                if len(container_text) > len(text):
                    return container_text

        return text or None
