from __future__ import annotations

import pytest

from core.analysis import AnalysisRecord, SentimentAnalysis, clamp_score, fallback_analysis
from core.scoring import sentiment_score, weighted_score
from conftest import analysis_payload


def _record(**kwargs) -> AnalysisRecord:
    return AnalysisRecord.model_validate(analysis_payload(**kwargs))


def test_weighted_score_combines_components():
    # 80*.4 + 70*.3 + 100*.2 + 60*.1
    assert weighted_score(_record()) == 79


def test_fallback_scores_54():
    assert weighted_score(fallback_analysis()) == 54


def test_half_values_round_up():
    # 20 + 15 + 8 + 5.5
    record = _record(classification="negative", relevancy=50, quality=50, engagement=55)
    assert weighted_score(record) == 49


@pytest.mark.parametrize(
    "classification, expected",
    [("positive", 100), ("neutral", 70), ("negative", 40), (None, 50), ("mixed", 50)],
)
def test_sentiment_scale(classification, expected):
    assert sentiment_score(classification) == expected


def test_score_bounds():
    assert weighted_score(_record(relevancy=100, quality=100, engagement=100)) == 100
    assert weighted_score(_record(classification="negative", relevancy=0, quality=0, engagement=0)) == 8


def test_clamp_score():
    assert clamp_score(140) == 100
    assert clamp_score(-3) == 0
    assert clamp_score("72.5") == 73
    for bad in (None, True, "high", float("nan")):
        with pytest.raises(ValueError):
            clamp_score(bad)


def test_sentiment_scores_rebalanced():
    s = SentimentAnalysis.model_validate(
        {"classification": "POSITIVE", "positive_score": 160, "negative_score": 20, "neutral_score": 20}
    )
    # 100/20/20 after clamping, rescaled to ~100
    assert s.classification == "positive"
    assert s.positive_score + s.negative_score + s.neutral_score == 100
    assert s.positive_score == 71


def test_unknown_enum_values_fall_back_to_defaults():
    payload = analysis_payload()
    payload["insights"]["stance"] = "ambivalent"
    payload["contributor"]["expertise_level"] = "guru"
    record = AnalysisRecord.model_validate(payload)
    assert record.insights.stance == "neutral"
    assert record.contributor.expertise_level == "novice"


def test_fallback_record_shape():
    record = fallback_analysis(quota_exceeded=True)
    assert record.fallback
    assert record.sentiment.classification == "neutral"
    assert record.sentiment.confidence == 50
    assert "quota-exceeded" in record.engagement.factors
    assert record.insights.key_points == ["AI analysis unavailable"]
