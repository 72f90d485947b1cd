"""Image harvesting, ranking and representative-image selection."""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional, Union
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup, Tag

from src.crawler.fetcher import RateLimitedFetcher
from src.services.completion import CompletionService, CompletionServiceError

logger = logging.getLogger(__name__)

# Tracking pixels, ad servers and tiny icons. Anything else is left for the
# selector to judge.
NON_CONTENT_PATTERNS = [
    "tracking",
    "pixel",
    "1x1",
    "spacer",
    "separator",
    "blank.gif",
    "transparent.png",
    "doubleclick",
    "googleadservices",
    "googlesyndication",
    "adsystem",
    "16x16",
    "24x24",
    "32x32",
    "1px",
    "2px",
]

BACKGROUND_IMAGE_PATTERN = re.compile(
    r"""background(?:-image)?\s*:\s*[^;}]*url\s*\(\s*['"]?([^'")]+)['"]?\s*\)""",
    re.I,
)
MARKDOWN_IMAGE_PATTERN = re.compile(r"!\[([^\]]*)\]\(\s*([^)\s]+)[^)]*\)")

MAX_CHOICES = 10

SELECTION_SYSTEM_PROMPT = """\
You are an expert at selecting the most representative image for news articles.
Choose the image that best represents the article content and would be most engaging as a featured image.

Consider:
- Image size and quality (larger is generally better)
- Alt text relevance to the article
- Avoid generic logos, ads, or decorative images
- Prefer images that directly relate to the article content

Respond with ONLY a JSON object in this format:
{"selectedIndex": 1, "reason": "Brief explanation of why this image was chosen"}"""


@dataclass
class ImageCandidate:
    url: str
    width: Optional[int] = None
    height: Optional[int] = None
    alt: str = ""
    source: str = "img"
    estimated_area: Optional[float] = None

    @property
    def area(self) -> float:
        if self.width and self.height:
            return float(self.width * self.height)
        return self.estimated_area or 0.0


@dataclass
class ImageSelection:
    url: str
    index: int
    reasoning: str
    used_fallback: bool = False
    images: list[str] = field(default_factory=list)


class ImageSelectionFailure(Exception):
    """Completion service could not pick a usable image index."""

    pass


def is_content_image(url: str, alt: str = "") -> bool:
    lowered_url = (url or "").lower()
    lowered_alt = (alt or "").lower()
    return not any(
        pattern in lowered_url or pattern in lowered_alt
        for pattern in NON_CONTENT_PATTERNS
    )


def _to_int(value) -> Optional[int]:
    if value is None:
        return None
    match = re.match(r"\s*(\d+)", str(value))
    if not match:
        return None
    number = int(match.group(1))
    return number or None


def _resolve(src: str, base_url: str | None) -> Optional[str]:
    src = (src or "").strip()
    if not src or src.lower().startswith("data:"):
        return None
    absolute = urljoin(base_url, src) if base_url else src
    if urlparse(absolute).scheme not in ("http", "https"):
        return None
    return absolute


def harvest_images(
    html: str | None = None,
    markdown: str | None = None,
    base_url: str | None = None,
) -> list[ImageCandidate]:
    """Collect candidate images from page HTML and/or markdown.

    Sources, in order: ``<img>`` tags (``src`` or ``data-src``), inline
    ``background-image`` styles, ``<style>`` block backgrounds and markdown
    ``![alt](url)`` images. Results are deduplicated by URL.
    """
    found: list[ImageCandidate] = []

    if html:
        soup = BeautifulSoup(html, "html.parser")
        for img in soup.find_all("img"):
            if not isinstance(img, Tag):
                continue
            src = img.get("src") or img.get("data-src") or img.get("data-lazy-src")
            url = _resolve(str(src or ""), base_url)
            alt = str(img.get("alt") or "")
            if not url or not is_content_image(url, alt):
                continue
            found.append(
                ImageCandidate(
                    url=url,
                    width=_to_int(img.get("width")),
                    height=_to_int(img.get("height")),
                    alt=alt,
                    source="img",
                )
            )

        for element in soup.find_all(style=True):
            if not isinstance(element, Tag):
                continue
            for raw in BACKGROUND_IMAGE_PATTERN.findall(str(element.get("style"))):
                url = _resolve(raw, base_url)
                if url and is_content_image(url):
                    found.append(
                        ImageCandidate(
                            url=url,
                            alt=f"Background image from {element.name}",
                            source="inline_style",
                        )
                    )

        for style_tag in soup.find_all("style"):
            for raw in BACKGROUND_IMAGE_PATTERN.findall(style_tag.get_text() or ""):
                url = _resolve(raw, base_url)
                if url and is_content_image(url):
                    found.append(
                        ImageCandidate(
                            url=url, alt="Background image from CSS", source="css"
                        )
                    )

    if markdown:
        for alt, raw in MARKDOWN_IMAGE_PATTERN.findall(markdown):
            url = _resolve(raw, base_url)
            if url and is_content_image(url, alt):
                found.append(ImageCandidate(url=url, alt=alt, source="markdown"))

    unique: list[ImageCandidate] = []
    seen: set[str] = set()
    for candidate in found:
        if candidate.url in seen:
            continue
        seen.add(candidate.url)
        unique.append(candidate)
    return unique


def estimate_area(url: str, fetcher: RateLimitedFetcher) -> float:
    """Estimate pixel area from ``Content-Length`` at ~3 bytes per pixel."""
    response = fetcher.head(url, timeout=10)
    if not response.ok:
        return 0.0
    size = response.content_length
    if not size:
        return 0.0
    side = math.sqrt(size / 3)
    return side * side


def rank_images(
    candidates: Iterable[ImageCandidate],
    fetcher: RateLimitedFetcher | None = None,
) -> list[ImageCandidate]:
    """Sort candidates largest first, probing sizes where dimensions are missing."""
    ranked = list(candidates)
    for candidate in ranked:
        if candidate.width and candidate.height:
            continue
        if candidate.estimated_area is None and fetcher is not None:
            candidate.estimated_area = estimate_area(candidate.url, fetcher)
    ranked.sort(key=lambda c: c.area, reverse=True)
    return ranked


def _coerce(candidate: Union[str, ImageCandidate]) -> ImageCandidate:
    if isinstance(candidate, ImageCandidate):
        return candidate
    return ImageCandidate(url=str(candidate), source="stored")


def _describe(index: int, candidate: ImageCandidate) -> str:
    if candidate.width and candidate.height:
        size = f"{candidate.width}x{candidate.height}"
    elif candidate.area:
        side = int(math.sqrt(candidate.area))
        size = f"~{side}x{side}"
    else:
        size = "unknown size"
    return f'{index}. {candidate.url} ({size}, alt: "{candidate.alt}")'


class ImageSelector:
    def __init__(
        self,
        completion: Optional[CompletionService],
        fetcher: RateLimitedFetcher | None = None,
        *,
        max_choices: int = MAX_CHOICES,
    ) -> None:
        self.completion = completion
        self.fetcher = fetcher
        self.max_choices = max_choices

    def _choose(
        self, choices: list[ImageCandidate], title: str, summary: str
    ) -> tuple[int, str]:
        if self.completion is None:
            raise ImageSelectionFailure("No completion service configured")
        listing = "\n".join(
            _describe(position, candidate)
            for position, candidate in enumerate(choices, start=1)
        )
        prompt = (
            f'Article Title: "{title}"\n\n'
            f'Article Summary: "{summary}"\n\n'
            f"Available Images:\n{listing}\n\n"
            "Select the best image (respond with JSON only):"
        )
        try:
            payload = self.completion.complete(
                prompt, system=SELECTION_SYSTEM_PROMPT, temperature=0.3
            )
        except CompletionServiceError as exc:
            raise ImageSelectionFailure(str(exc)) from exc

        raw_index = payload.get("selectedIndex")
        if isinstance(raw_index, bool):
            raise ImageSelectionFailure(f"Invalid index {raw_index!r}")
        try:
            index = int(raw_index) - 1
        except (TypeError, ValueError) as exc:
            raise ImageSelectionFailure(f"Invalid index {raw_index!r}") from exc
        if not 0 <= index < len(choices):
            raise ImageSelectionFailure(f"Index {raw_index} out of range")
        return index, str(payload.get("reason") or "Selected by completion service")

    def select(
        self,
        candidates: Iterable[Union[str, ImageCandidate]],
        title: str,
        summary: str = "",
    ) -> Optional[ImageSelection]:
        """Pick one representative image, or None when there are no candidates."""
        coerced = [_coerce(candidate) for candidate in candidates]
        if not coerced:
            return None
        if len(coerced) == 1:
            return ImageSelection(
                url=coerced[0].url,
                index=0,
                reasoning="Only one image available",
                images=[coerced[0].url],
            )

        ranked = rank_images(coerced, self.fetcher)
        urls = [candidate.url for candidate in ranked]
        try:
            index, reason = self._choose(ranked[: self.max_choices], title, summary)
        except ImageSelectionFailure as exc:
            logger.warning("Image selection fell back to largest image: %s", exc)
            return ImageSelection(
                url=ranked[0].url,
                index=0,
                reasoning="Selection unavailable, using largest image",
                used_fallback=True,
                images=urls,
            )
        return ImageSelection(
            url=ranked[index].url, index=index, reasoning=reason, images=urls
        )
