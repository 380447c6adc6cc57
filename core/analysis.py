"""Typed analysis record attached to every feed item.

Decoding is strict about structure but lenient about values: numbers are
clamped into [0, 100], enum-like strings are case-folded and fall back to the
field default when unknown, and free-text lists are trimmed.
"""

from __future__ import annotations

import math
from typing import Annotated, Any, Literal

from pydantic import BaseModel, BeforeValidator, ConfigDict, model_validator

MAX_LIST_ITEMS = 5


def clamp_score(value: Any) -> int:
    """Coerce *value* to an int in [0, 100]. Raises ValueError when not numeric."""
    if isinstance(value, bool) or value is None:
        raise ValueError("score must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"score must be a number, got {value!r}") from exc
    if math.isnan(number):
        raise ValueError("score must not be NaN")
    return int(math.floor(max(0.0, min(100.0, number)) + 0.5))


def _choice(allowed: tuple[str, ...], default: str):
    def coerce(value: Any) -> str:
        if isinstance(value, str):
            folded = value.strip().lower()
            if folded in allowed:
                return folded
        return default

    return coerce


def _text_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ValueError("expected a list of strings")
    cleaned = [str(v).strip() for v in value if v is not None and str(v).strip()]
    return cleaned[:MAX_LIST_ITEMS]


CLASSIFICATIONS = ("positive", "negative", "neutral")
STANCES = ("supporting", "opposing", "neutral", "questioning")
TONES = ("formal", "casual", "emotional", "analytical")
EXPERTISE_LEVELS = ("novice", "intermediate", "expert")
CONTRIBUTION_TYPES = ("opinion", "fact", "experience", "question")

Score = Annotated[int, BeforeValidator(clamp_score)]
TextList = Annotated[list[str], BeforeValidator(_text_list)]
Classification = Annotated[
    Literal["positive", "negative", "neutral"],
    BeforeValidator(_choice(CLASSIFICATIONS, "neutral")),
]
Stance = Annotated[
    Literal["supporting", "opposing", "neutral", "questioning"],
    BeforeValidator(_choice(STANCES, "neutral")),
]
Tone = Annotated[
    Literal["formal", "casual", "emotional", "analytical"],
    BeforeValidator(_choice(TONES, "casual")),
]
ExpertiseLevel = Annotated[
    Literal["novice", "intermediate", "expert"],
    BeforeValidator(_choice(EXPERTISE_LEVELS, "novice")),
]
ContributionType = Annotated[
    Literal["opinion", "fact", "experience", "question"],
    BeforeValidator(_choice(CONTRIBUTION_TYPES, "opinion")),
]


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class SentimentAnalysis(_Record):
    classification: Classification = "neutral"
    confidence: Score = 50
    positive_score: Score = 33
    negative_score: Score = 33
    neutral_score: Score = 34

    @model_validator(mode="before")
    @classmethod
    def _balance_scores(cls, data: Any) -> Any:
        """Rescale the three scores so they sum to roughly 100."""
        if not isinstance(data, dict):
            return data
        keys = (("positive_score", 33), ("negative_score", 33), ("neutral_score", 34))
        try:
            pos, neg, neu = (clamp_score(data.get(k, d)) for k, d in keys)
        except ValueError:
            return data
        total = pos + neg + neu
        if total == 0:
            pos, neg, neu = 33, 33, 34
        elif abs(total - 100) > 5:
            pos = round(pos * 100 / total)
            neg = round(neg * 100 / total)
            neu = max(0, 100 - pos - neg)
        return {**data, "positive_score": pos, "negative_score": neg, "neutral_score": neu}


class RelevancyAnalysis(_Record):
    score: Score = 50
    reasoning: str = ""
    keywords_matched: TextList = []


class QualityAnalysis(_Record):
    clarity: Score = 50
    coherence: Score = 50
    informativeness: Score = 50
    overall_quality: Score = 50


class EngagementAnalysis(_Record):
    score: Score = 50
    factors: TextList = []
    discussion_potential: Score = 50


class InsightsAnalysis(_Record):
    key_points: TextList = []
    stance: Stance = "neutral"
    tone: Tone = "casual"
    credibility_indicators: TextList = []


class ContributorAnalysis(_Record):
    score: Score = 50
    expertise_level: ExpertiseLevel = "novice"
    contribution_type: ContributionType = "opinion"


class AnalysisRecord(_Record):
    sentiment: SentimentAnalysis
    relevancy: RelevancyAnalysis
    quality: QualityAnalysis
    engagement: EngagementAnalysis
    insights: InsightsAnalysis
    contributor: ContributorAnalysis
    fallback: bool = False


def fallback_analysis(note: str = "Unable to analyze with AI", *, quota_exceeded: bool = False) -> AnalysisRecord:
    """Deterministic neutral record used whenever classification fails."""
    return AnalysisRecord(
        sentiment=SentimentAnalysis(
            classification="neutral",
            confidence=50,
            positive_score=33,
            negative_score=33,
            neutral_score=34,
        ),
        relevancy=RelevancyAnalysis(score=50, reasoning=note, keywords_matched=[]),
        quality=QualityAnalysis(),
        engagement=EngagementAnalysis(
            score=50,
            factors=["quota-exceeded"] if quota_exceeded else [],
            discussion_potential=50,
        ),
        insights=InsightsAnalysis(
            key_points=["AI analysis unavailable"] if quota_exceeded else [],
            stance="neutral",
            tone="casual",
        ),
        contributor=ContributorAnalysis(),
        fallback=True,
    )
