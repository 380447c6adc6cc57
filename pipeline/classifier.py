"""Gemini-backed item classifier with a deterministic fallback.

Classification problems (missing key, timeout, quota, non-JSON reply,
missing required sections) never propagate: the caller always receives an
``AnalysisRecord``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence

from google import genai
from google.genai import types
from pydantic import BaseModel, ConfigDict, ValidationError

from config.settings import settings
from core.analysis import (
    AnalysisRecord,
    ContributorAnalysis,
    EngagementAnalysis,
    InsightsAnalysis,
    QualityAnalysis,
    RelevancyAnalysis,
    SentimentAnalysis,
    fallback_analysis,
)

log = logging.getLogger(__name__)

MAX_PROMPT_TEXT = 4000

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*(.*?)\s*```$", re.DOTALL)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)

PROMPT_TEMPLATE = """Analyze this discussion item found while tracking the keyword "{keyword}".
Context: {context}

ITEM:
\"\"\"{text}\"\"\"

Reply with JSON only, in exactly this shape (numbers are 0-100):
{{
  "sentiment": {{"classification": "positive|negative|neutral", "confidence": 0,
                "positive_score": 0, "negative_score": 0, "neutral_score": 0}},
  "relevancy": {{"score": 0, "reasoning": "one sentence", "keywords_matched": []}},
  "quality": {{"clarity": 0, "coherence": 0, "informativeness": 0, "overall_quality": 0}},
  "engagement": {{"score": 0, "factors": [], "discussion_potential": 0}},
  "insights": {{"key_points": [], "stance": "supporting|opposing|neutral|questioning",
               "tone": "formal|casual|emotional|analytical", "credibility_indicators": []}},
  "contributor": {{"score": 0, "expertise_level": "novice|intermediate|expert",
                  "contribution_type": "opinion|fact|experience|question"}}
}}"""


@dataclass
class ClassificationContext:
    keyword: str
    channel: str | None = None
    title: str | None = None

    def describe(self) -> str:
        parts = []
        if self.title:
            parts.append(f'post "{self.title[:200]}"')
        if self.channel:
            parts.append(f"in r/{self.channel}")
        return " ".join(parts) or "general discussion"


class ClassifierReply(BaseModel):
    """What the service must return; missing optional sections are derived."""

    model_config = ConfigDict(extra="ignore")

    sentiment: SentimentAnalysis
    quality: QualityAnalysis
    insights: InsightsAnalysis
    relevancy: RelevancyAnalysis | None = None
    engagement: EngagementAnalysis | None = None
    contributor: ContributorAnalysis | None = None

    def to_record(self) -> AnalysisRecord:
        quality = self.quality
        relevancy = self.relevancy or RelevancyAnalysis(
            score=quality.overall_quality,
            reasoning="Relevancy not reported",
            keywords_matched=self.insights.key_points,
        )
        engagement = self.engagement or EngagementAnalysis(
            score=round((quality.overall_quality + relevancy.score) / 2),
            factors=["informative"] if self.insights.key_points else [],
            discussion_potential=quality.overall_quality,
        )
        contributor = self.contributor or ContributorAnalysis(
            score=quality.overall_quality,
            expertise_level=_expertise_for(quality.overall_quality),
            contribution_type=_contribution_for(self.insights.stance, quality.informativeness),
        )
        return AnalysisRecord(
            sentiment=self.sentiment,
            relevancy=relevancy,
            quality=quality,
            engagement=engagement,
            insights=self.insights,
            contributor=contributor,
        )


def _expertise_for(overall_quality: int) -> str:
    if overall_quality > 80:
        return "expert"
    if overall_quality > 60:
        return "intermediate"
    return "novice"


def _contribution_for(stance: str, informativeness: int) -> str:
    if stance == "questioning":
        return "question"
    return "fact" if informativeness > 70 else "opinion"


def strip_code_fences(text: str) -> str:
    text = text.strip()
    match = _FENCE_RE.match(text)
    return match.group(1) if match else text


def parse_reply(text: str | None) -> AnalysisRecord:
    """Decode a service reply. Raises ValueError when it is unusable."""
    if not text or not text.strip():
        raise ValueError("empty reply")
    body = strip_code_fences(text)
    if not body.startswith("{"):
        match = _OBJECT_RE.search(body)
        if not match:
            raise ValueError("no JSON object in reply")
        body = match.group(0)
    try:
        data = json.loads(body)
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError("reply is not a JSON object")
    try:
        return ClassifierReply.model_validate(data).to_record()
    except ValidationError as exc:
        raise ValueError(f"reply failed validation: {exc.error_count()} errors") from exc


def _is_quota_error(exc: Exception) -> bool:
    if getattr(exc, "code", None) == 429:
        return True
    msg = str(exc).lower()
    return "resource_exhausted" in msg or "quota" in msg or "too many requests" in msg


class ClassifierAdapter:
    """Sends item text to Gemini and decodes the reply into an AnalysisRecord."""

    def __init__(
        self,
        client: Any | None = None,
        *,
        model: str | None = None,
        timeout: float | None = None,
        concurrency: int | None = None,
        max_items: int | None = None,
    ) -> None:
        self._client = client
        self._model = model or settings.GEMINI_MODEL
        self._timeout = timeout if timeout is not None else settings.CLASSIFIER_TIMEOUT
        self._concurrency = max(1, concurrency or settings.CLASSIFIER_CONCURRENCY)
        self._max_items = max_items if max_items is not None else settings.CLASSIFIER_MAX_ITEMS_PER_CYCLE
        self._quota_blocked_until: datetime | None = None
        self._warned_no_key = False

    def _get_client(self) -> Any | None:
        if self._client is None and settings.GEMINI_API_KEY:
            self._client = genai.Client(api_key=settings.GEMINI_API_KEY)
            log.info("Created Gemini client (model %s)", self._model)
        return self._client

    @property
    def quota_exceeded(self) -> bool:
        if self._quota_blocked_until is None:
            return False
        if datetime.now(timezone.utc) >= self._quota_blocked_until:
            self._quota_blocked_until = None
            return False
        return True

    def _trip_quota(self) -> None:
        self._quota_blocked_until = datetime.now(timezone.utc) + timedelta(
            minutes=settings.CLASSIFIER_QUOTA_COOLDOWN_MINUTES
        )
        log.warning(
            "Classifier quota exceeded; using fallback analysis until %s",
            self._quota_blocked_until.isoformat(),
        )

    async def classify(self, text: str, context: ClassificationContext) -> AnalysisRecord:
        if self.quota_exceeded:
            return fallback_analysis("AI analysis unavailable (quota exceeded)", quota_exceeded=True)

        client = self._get_client()
        if client is None:
            if not self._warned_no_key:
                log.warning("GEMINI_API_KEY is not set; all items get fallback analysis")
                self._warned_no_key = True
            return fallback_analysis("AI analysis unavailable (no API key configured)")

        prompt = PROMPT_TEMPLATE.format(
            keyword=context.keyword,
            context=context.describe(),
            text=(text or "")[:MAX_PROMPT_TEXT],
        )
        try:
            response = await asyncio.wait_for(
                client.aio.models.generate_content(
                    model=self._model,
                    contents=prompt,
                    config=types.GenerateContentConfig(
                        temperature=0.2,
                        response_mime_type="application/json",
                    ),
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            log.warning("Classification timed out after %.1fs", self._timeout)
            return fallback_analysis(f"AI analysis timed out after {self._timeout:g} seconds")
        except Exception as exc:
            if _is_quota_error(exc):
                self._trip_quota()
                return fallback_analysis(
                    "AI analysis unavailable (quota exceeded)", quota_exceeded=True
                )
            log.warning("Classification request failed: %s", exc)
            return fallback_analysis("Unable to analyze with AI")

        try:
            return parse_reply(getattr(response, "text", None))
        except ValueError as exc:
            log.warning("Unusable classification reply: %s", exc)
            return fallback_analysis("AI reply could not be parsed")

    async def classify_many(
        self,
        entries: Sequence[tuple[str, ClassificationContext]],
    ) -> list[AnalysisRecord]:
        """Classify concurrently; results keep the order of *entries*."""
        sem = asyncio.Semaphore(self._concurrency)

        async def _one(index: int, text: str, context: ClassificationContext) -> AnalysisRecord:
            if index >= self._max_items:
                return fallback_analysis("Classification budget for this cycle exhausted")
            async with sem:
                try:
                    return await self.classify(text, context)
                except Exception:
                    log.exception("Unexpected classifier failure")
                    return fallback_analysis("Unable to analyze with AI")

        return list(
            await asyncio.gather(*(_one(i, text, ctx) for i, (text, ctx) in enumerate(entries)))
        )
