"""Relevance/sentiment classification of extracted articles.

A single ordinal :class:`RelevanceScore` describes how an article treats
the organization. Every label stored on an Article (legacy three-way
sentiment, relevance tier, organization label) is a projection of that one
score, so the fields can never disagree.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Optional

from src.services.completion import CompletionService, CompletionServiceError

logger = logging.getLogger(__name__)

MAX_PROMPT_CONTENT = 6000

SYSTEM_PROMPT = (
    "You are an expert content analyst specializing in organizational "
    "sentiment analysis and social impact assessment."
)

RUBRIC_PROMPT = """\
You are analyzing an article about "{organization}" to determine organizational sentiment and relevance.

SENTIMENT SCALE:
-1: Organization is mentioned NEGATIVELY (criticism, scandal, negative impact, problems caused by org)
 0: Organization is NOT MENTIONED or only mentioned in passing/context
 1: Organization is mentioned but NOT the main focus (brief mention, quoted source, etc.)
 2: Organization IS the main focus and article is INFORMATIONAL (facts, updates, general news about org)
 3: Organization IS the main focus and article is about their SOCIAL IMPACT (inspiring stories, impact work, positive change they're creating)

ARTICLE TITLE: {title}

ARTICLE CONTENT:
{content}

Be STRICT with scoring:
- Only use 3 if there's clear evidence of INSPIRING SOCIAL IMPACT content
- Only use 2 if the org is clearly the MAIN FOCUS but it's informational
- Use 1 for mentions that aren't the main focus
- Use 0 if there's truly no meaningful mention
- Use -1 only for genuinely negative coverage

Respond with a JSON object with keys "sentimentScore" (integer -1..3),
"reasoning" (string), "organizationMentions" (list of strings),
"mainFocus" (string) and "socialImpactIndicators" (list of strings).
"""


class RelevanceScore(IntEnum):
    NEGATIVE = -1
    NOT_MENTIONED = 0
    BRIEF_MENTION = 1
    MAIN_FOCUS = 2
    SOCIAL_IMPACT = 3


_ORGANIZATION_LABELS = {
    RelevanceScore.NEGATIVE: "Negative",
    RelevanceScore.NOT_MENTIONED: "Not Mentioned",
    RelevanceScore.BRIEF_MENTION: "Brief Mention",
    RelevanceScore.MAIN_FOCUS: "Main Focus",
    RelevanceScore.SOCIAL_IMPACT: "Social Impact",
}


def legacy_sentiment(score: Optional[int]) -> str:
    """Three-way sentiment kept on Article for older consumers."""
    if score == RelevanceScore.NEGATIVE:
        return "negative"
    if score == RelevanceScore.SOCIAL_IMPACT:
        return "positive"
    return "neutral"


def relevance_tier(score: Optional[int]) -> str:
    if score in (RelevanceScore.MAIN_FOCUS, RelevanceScore.SOCIAL_IMPACT):
        return "high"
    if score in (RelevanceScore.NEGATIVE, RelevanceScore.BRIEF_MENTION):
        return "medium"
    return "low"


def organization_label(score: Optional[int]) -> str:
    if score is None:
        return _ORGANIZATION_LABELS[RelevanceScore.NOT_MENTIONED]
    return _ORGANIZATION_LABELS[RelevanceScore(score)]


class ClassificationServiceFailure(Exception):
    """Completion call for classification failed or returned an unusable score."""

    pass


@dataclass
class Classification:
    score: Optional[RelevanceScore]
    reasoning: str = ""
    organization_mentions: list[str] = field(default_factory=list)
    main_focus: str = ""
    social_impact_indicators: list[str] = field(default_factory=list)

    @property
    def available(self) -> bool:
        return self.score is not None

    @property
    def effective_score(self) -> RelevanceScore:
        if self.score is None:
            return RelevanceScore.NOT_MENTIONED
        return self.score

    @property
    def sentiment(self) -> str:
        return legacy_sentiment(self.score)

    @property
    def relevance(self) -> str:
        return relevance_tier(self.score)

    @property
    def label(self) -> str:
        return organization_label(self.score)


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None]


class Classifier:
    """Score content against the relevance rubric through a completion service."""

    def __init__(
        self,
        completion: Optional[CompletionService],
        *,
        max_content_chars: int = MAX_PROMPT_CONTENT,
    ) -> None:
        self.completion = completion
        self.max_content_chars = max_content_chars

    def build_prompt(
        self, content: str, organization_name: str, title: str | None = None
    ) -> str:
        return RUBRIC_PROMPT.format(
            organization=organization_name,
            title=title or "N/A",
            content=(content or "")[: self.max_content_chars],
        )

    def _request(
        self, content: str, organization_name: str, title: str | None
    ) -> Classification:
        if self.completion is None:
            raise ClassificationServiceFailure("No completion service configured")
        try:
            payload = self.completion.complete(
                self.build_prompt(content, organization_name, title),
                system=SYSTEM_PROMPT,
                temperature=0.1,
            )
        except CompletionServiceError as exc:
            raise ClassificationServiceFailure(str(exc)) from exc

        raw_score = payload.get("sentimentScore")
        if isinstance(raw_score, bool):
            raise ClassificationServiceFailure(f"Invalid score: {raw_score!r}")
        try:
            score = RelevanceScore(int(raw_score))
        except (TypeError, ValueError) as exc:
            raise ClassificationServiceFailure(
                f"Invalid score: {raw_score!r}"
            ) from exc

        return Classification(
            score=score,
            reasoning=str(payload.get("reasoning") or ""),
            organization_mentions=_string_list(payload.get("organizationMentions")),
            main_focus=str(payload.get("mainFocus") or ""),
            social_impact_indicators=_string_list(
                payload.get("socialImpactIndicators")
            ),
        )

    def classify(
        self, content: str, organization_name: str, title: str | None = None
    ) -> Classification:
        """Return a classification; never raises for service problems."""
        try:
            result = self._request(content, organization_name, title)
        except ClassificationServiceFailure as exc:
            logger.warning(
                "Classification unavailable for %s: %s", organization_name, exc
            )
            return Classification(
                score=None, reasoning=f"Classification unavailable: {exc}"
            )

        logger.info(
            "Classified article for %s: %s (%s)",
            organization_name,
            int(result.score),
            result.label,
        )
        return result
