"""Seed-page URL discovery for organization news pages.

Discovery fetches one seed page (the organization's "news" or "press"
page) and harvests candidate article links from it:

1. ``href`` attributes (quoted and unquoted, absolute and relative)
2. ``data-href`` attributes used by card-style layouts
3. ``onclick`` handlers assigning ``location`` or calling ``window.open``
4. ``"url": "..."`` fragments inside embedded JSON (Next.js/Gatsby data,
   JSON-LD item lists)

Candidates are resolved against the seed URL, filtered with
``src.pipeline.url_filters.check_is_article``, classified as ``post``
(same host as the seed) or ``news`` (another host), deduplicated against
the organization's stored articles and capped.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional
from urllib.parse import urldefrag, urljoin, urlparse

from bs4 import BeautifulSoup

from src import config
from src.crawler.fetcher import RateLimitedFetcher
from src.crawler.utils import normalize_host, sanitize_text
from src.pipeline.url_filters import SKIPPED_SCHEMES, check_is_article
from src.utils.url_classifier import URL_TYPE_POST, classify_url

logger = logging.getLogger(__name__)

HREF_PATTERN = re.compile(r"""href\s*=\s*(?:["']([^"']+)["']|([^\s"'<>]+))""", re.I)
DATA_HREF_PATTERN = re.compile(r"""data-href\s*=\s*["']([^"']+)["']""", re.I)
ONCLICK_PATTERN = re.compile(
    r"""onclick\s*=\s*["'][^"']*?(?:location(?:\.href)?\s*=\s*|window\.open\(\s*)"""
    r"""(?:\\?["']|&quot;|&#39;)([^"'\\&]+)""",
    re.I,
)
JSON_URL_PATTERN = re.compile(r'"url"\s*:\s*"((?:https?:)?(?:\\?/)[^"]+)"', re.I)

TITLE_PREVIEW_MAX = 200


@dataclass
class DiscoveredLink:
    """One classified candidate link."""

    url: str
    url_type: str
    domain: str
    title_preview: Optional[str] = None

    @property
    def is_post(self) -> bool:
        return self.url_type == URL_TYPE_POST


@dataclass
class DiscoveryResult:
    """Outcome of a discovery run; ``error`` is set when the seed fetch failed."""

    seed_url: str
    urls: list[DiscoveredLink] = field(default_factory=list)
    error: Optional[str] = None
    candidates_seen: int = 0

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def news_count(self) -> int:
        return sum(1 for link in self.urls if not link.is_post)

    @property
    def post_count(self) -> int:
        return sum(1 for link in self.urls if link.is_post)


def normalize_discovered_url(href: str, base_url: str) -> Optional[str]:
    """Resolve ``href`` against ``base_url`` and drop the fragment."""
    href = (href or "").strip()
    if not href:
        return None
    href = href.replace("\\/", "/").replace("&amp;", "&")
    if href.lower().startswith(SKIPPED_SCHEMES):
        return None
    absolute, _fragment = urldefrag(urljoin(base_url, href))
    parsed = urlparse(absolute)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return absolute


def extract_candidate_links(html: str, base_url: str) -> list[str]:
    """Return raw candidate hrefs in first-seen order, not yet filtered."""
    if not html:
        return []

    found: list[str] = []
    for match in HREF_PATTERN.finditer(html):
        found.append(match.group(1) or match.group(2))
    found.extend(DATA_HREF_PATTERN.findall(html))
    found.extend(ONCLICK_PATTERN.findall(html))
    found.extend(JSON_URL_PATTERN.findall(html))

    candidates: list[str] = []
    seen: set[str] = set()
    for href in found:
        absolute = normalize_discovered_url(href, base_url)
        if not absolute or absolute in seen:
            continue
        seen.add(absolute)
        candidates.append(absolute)
    return candidates


def _anchor_titles(html: str, base_url: str) -> dict[str, str]:
    """Map resolved anchor URLs to their visible text for previews."""
    titles: dict[str, str] = {}
    try:
        soup = BeautifulSoup(html, "html.parser")
    except Exception as exc:  # pragma: no cover - html.parser is lenient
        logger.debug("Failed to parse seed page for anchor titles: %s", exc)
        return titles

    for a_tag in soup.find_all("a", href=True):
        href = a_tag.get("href")
        if isinstance(href, (list, tuple)):
            href = href[0] if href else ""
        absolute = normalize_discovered_url(str(href), base_url)
        if not absolute or absolute in titles:
            continue
        text = sanitize_text(a_tag.get_text(" ", strip=True))
        if text:
            titles[absolute] = text[:TITLE_PREVIEW_MAX]
    return titles


def classify_links(
    candidates: Iterable[str],
    seed_url: str,
    *,
    known_urls: Iterable[str] = (),
    max_urls: int | None = None,
    titles: dict[str, str] | None = None,
) -> list[DiscoveredLink]:
    """Filter, classify, dedup against ``known_urls`` and cap."""
    limit = max_urls if max_urls is not None else config.DISCOVERY_MAX_URLS
    known = {url.rstrip("/") for url in known_urls}
    titles = titles or {}

    links: list[DiscoveredLink] = []
    seen: set[str] = set()
    for url in candidates:
        key = url.rstrip("/")
        if key in seen:
            continue
        seen.add(key)
        if not check_is_article(url, seed_url=seed_url):
            continue
        if len(links) >= limit:
            break
        if key in known:
            continue
        links.append(
            DiscoveredLink(
                url=url,
                url_type=classify_url(url, seed_url),
                domain=normalize_host(url),
                title_preview=titles.get(url),
            )
        )
    return links


def discover_urls(
    seed_url: str,
    organization_name: str | None = None,
    *,
    fetcher: RateLimitedFetcher,
    known_urls: Iterable[str] = (),
    max_urls: int | None = None,
) -> DiscoveryResult:
    """Fetch ``seed_url`` and return classified candidate article links.

    A failed seed fetch returns a result with ``error`` set and no URLs;
    there is no partial discovery.
    """
    logger.info(
        "Discovering links for %s from %s", organization_name or "organization", seed_url
    )
    response = fetcher.fetch(seed_url)
    if not response.ok:
        message = str(response.error) if response.error else "Seed fetch failed"
        logger.warning("Discovery fetch failed for %s: %s", seed_url, message)
        return DiscoveryResult(seed_url=seed_url, error=message)

    html = response.text
    candidates = extract_candidate_links(html, seed_url)
    links = classify_links(
        candidates,
        seed_url,
        known_urls=known_urls,
        max_urls=max_urls,
        titles=_anchor_titles(html, seed_url),
    )
    result = DiscoveryResult(
        seed_url=seed_url, urls=links, candidates_seen=len(candidates)
    )
    logger.info(
        "Discovery found %d candidates, kept %d (%d news, %d posts) for %s",
        len(candidates),
        len(links),
        result.news_count,
        result.post_count,
        seed_url,
    )
    return result


def manual_links(urls: Iterable[str]) -> list[DiscoveredLink]:
    """Turn an operator-supplied URL list into ``post`` links.

    Invalid or duplicate entries are skipped.
    """
    links: list[DiscoveredLink] = []
    seen: set[str] = set()
    for raw in urls:
        url = (raw or "").strip()
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            logger.warning("Skipping invalid manual URL: %r", raw)
            continue
        if url in seen:
            continue
        seen.add(url)
        links.append(
            DiscoveredLink(
                url=url,
                url_type=URL_TYPE_POST,
                domain=normalize_host(url),
                title_preview=f"Manual: {parsed.path or '/'}",
            )
        )
    return links
