from __future__ import annotations

import math

from core.analysis import AnalysisRecord

SENTIMENT_SCALE = {"positive": 100, "neutral": 70, "negative": 40}
UNKNOWN_SENTIMENT_SCORE = 50

RELEVANCY_WEIGHT = 0.4
QUALITY_WEIGHT = 0.3
SENTIMENT_WEIGHT = 0.2
ENGAGEMENT_WEIGHT = 0.1


def sentiment_score(classification: str | None) -> int:
    return SENTIMENT_SCALE.get(classification or "", UNKNOWN_SENTIMENT_SCORE)


def weighted_score(analysis: AnalysisRecord) -> int:
    """Composite 0-100 score: relevancy 40%, quality 30%, sentiment 20%, engagement 10%."""
    relevancy = analysis.relevancy.score / 100
    quality = analysis.quality.overall_quality / 100
    sentiment = sentiment_score(analysis.sentiment.classification) / 100
    engagement = analysis.engagement.score / 100

    raw = (
        relevancy * RELEVANCY_WEIGHT
        + quality * QUALITY_WEIGHT
        + sentiment * SENTIMENT_WEIGHT
        + engagement * ENGAGEMENT_WEIGHT
    )
    # half-up rounding on a value with float noise (8.000000000000002) trimmed
    score = math.floor(round(raw * 100, 9) + 0.5)
    return max(0, min(100, score))
