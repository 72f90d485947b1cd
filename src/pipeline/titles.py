"""Headline clean-up before an article is stored."""

from __future__ import annotations

import html
import logging
import re
from typing import Optional

from src.crawler.utils import sanitize_text
from src.services.completion import CompletionService, CompletionServiceError

logger = logging.getLogger(__name__)

DEFAULT_MAX_LENGTH = 80

TITLE_SYSTEM_PROMPT = """\
You are an expert editor specializing in news article titles.
Your job is to clean up and improve article titles while preserving their meaning.

Tasks:
1. Decode any HTML entities (e.g., &amp; -> &, &quot; -> ")
2. Fix spelling and grammar errors
3. Ensure proper capitalization
4. Shorten to {max_length} characters or less if needed (while preserving key information)
5. Remove redundant words or phrases

Respond with ONLY a JSON object in this format:
{{"formattedTitle": "The cleaned up title", "changes": ["List of changes made"]}}"""

_WHITESPACE = re.compile(r"\s+")


class TitleFormattingFailure(Exception):
    """Completion service returned no usable title."""

    pass


def truncate_title(title: str, max_length: int = DEFAULT_MAX_LENGTH) -> str:
    """Cut ``title`` at a word boundary and add an ellipsis when too long."""
    if len(title) <= max_length:
        return title
    cut = title[: max_length - 1]
    if " " in cut:
        cut = cut.rsplit(" ", 1)[0]
    return cut.rstrip(" ,;:-") + "…"


def basic_clean(title: str, max_length: int = DEFAULT_MAX_LENGTH) -> str:
    cleaned = _WHITESPACE.sub(" ", html.unescape(sanitize_text(title))).strip()
    return truncate_title(cleaned, max_length)


class TitleFormatter:
    def __init__(
        self,
        completion: Optional[CompletionService],
        max_length: int = DEFAULT_MAX_LENGTH,
    ) -> None:
        self.completion = completion
        self.max_length = max_length

    def _request(self, raw_title: str) -> str:
        if self.completion is None:
            raise TitleFormattingFailure("No completion service configured")
        try:
            payload = self.completion.complete(
                f'Please format this title: "{raw_title}"',
                system=TITLE_SYSTEM_PROMPT.format(max_length=self.max_length),
                temperature=0.2,
                max_tokens=200,
            )
        except CompletionServiceError as exc:
            raise TitleFormattingFailure(str(exc)) from exc

        formatted = sanitize_text(payload.get("formattedTitle"))
        if not formatted:
            raise TitleFormattingFailure("Empty formatted title")
        return formatted

    def format(self, raw_title: str | None) -> str:
        """Return a cleaned title no longer than ``max_length`` characters."""
        raw_title = sanitize_text(raw_title)
        if not raw_title:
            return ""
        try:
            formatted = self._request(raw_title)
        except TitleFormattingFailure as exc:
            logger.debug("Title formatting fell back to basic clean-up: %s", exc)
            return basic_clean(raw_title, self.max_length)
        return truncate_title(
            _WHITESPACE.sub(" ", html.unescape(formatted)), self.max_length
        )
