"""Shared fixtures: temporary database, canned feeds and a fake classifier."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

from config.settings import settings
from core.analysis import AnalysisRecord
from data.database import init_db, make_engine, make_session_factory
from pipeline.base import RateLimiter
from pipeline.feed import FeedFetcher


@pytest.fixture(autouse=True)
def _no_real_gemini(monkeypatch):
    """Tests never reach the real classification service."""
    monkeypatch.setattr(settings, "GEMINI_API_KEY", "")


@pytest.fixture
async def db_engine(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


def analysis_payload(
    classification: str = "positive",
    relevancy: int = 80,
    quality: int = 70,
    engagement: int = 60,
) -> dict[str, Any]:
    return {
        "sentiment": {
            "classification": classification,
            "confidence": 90,
            "positive_score": 80,
            "negative_score": 5,
            "neutral_score": 15,
        },
        "relevancy": {"score": relevancy, "reasoning": "on topic", "keywords_matched": ["solar"]},
        "quality": {
            "clarity": quality,
            "coherence": quality,
            "informativeness": quality,
            "overall_quality": quality,
        },
        "engagement": {"score": engagement, "factors": ["question"], "discussion_potential": 55},
        "insights": {
            "key_points": ["prices fall"],
            "stance": "supporting",
            "tone": "analytical",
            "credibility_indicators": [],
        },
        "contributor": {"score": 65, "expertise_level": "intermediate", "contribution_type": "fact"},
    }


@pytest.fixture
def make_analysis():
    def _make(**kwargs: Any) -> AnalysisRecord:
        return AnalysisRecord.model_validate(analysis_payload(**kwargs))

    return _make


class FakeClassifier:
    """Stands in for ClassifierAdapter; records what it was asked to classify."""

    def __init__(self, record: AnalysisRecord) -> None:
        self.record = record
        self.calls: list[tuple[str, Any]] = []

    async def classify_many(self, entries):
        self.calls.extend(entries)
        return [self.record for _ in entries]


@pytest.fixture
def fake_classifier(make_analysis):
    return FakeClassifier(make_analysis())


def atom_feed(channel: str, posts: list[tuple[str, str]], published: datetime | None = None) -> str:
    """Render a search result feed with (post_id, title) entries."""
    published = published or datetime.now(timezone.utc) - timedelta(hours=1)
    stamp = published.strftime("%Y-%m-%dT%H:%M:%SZ")
    entries = "".join(
        f"""
  <entry>
    <author><name>/u/author_{post_id}</name></author>
    <content type="html">&lt;div&gt;&lt;p&gt;Body of {title}&lt;/p&gt;&lt;/div&gt; submitted by /u/author_{post_id} to r/{channel} [link] [comments]</content>
    <id>t3_{post_id}</id>
    <link href="https://www.reddit.com/r/{channel}/comments/{post_id}/slug/" />
    <updated>{stamp}</updated>
    <published>{stamp}</published>
    <title>{title}</title>
  </entry>"""
        for post_id, title in posts
    )
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>search results</title>{entries}
</feed>"""


def comments_listing(post_id: str, bodies: list[str]) -> list[dict[str, Any]]:
    children = [
        {
            "kind": "t1",
            "data": {
                "id": f"{post_id}c{i}",
                "body": body,
                "author": f"commenter{i}",
                "score": 10 - i,
                "created_utc": 1_760_000_000 + i,
            },
        }
        for i, body in enumerate(bodies)
    ]
    children.append({"kind": "more", "data": {"id": "more1"}})
    return [
        {"kind": "Listing", "data": {"children": []}},
        {"kind": "Listing", "data": {"children": children}},
    ]


class FeedServer:
    """Canned responses for the search feed and reply endpoints, keyed by channel."""

    def __init__(self) -> None:
        self.feeds: dict[str, str] = {}
        self.failing: set[str] = set()
        self.flaky: dict[str, int] = {}
        self.comments: dict[str, list[str]] = {}
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/search.rss"):
            channel = path.split("/")[2]
            if channel in self.failing:
                return httpx.Response(503, text="unavailable")
            if self.flaky.get(channel, 0) > 0:
                self.flaky[channel] -= 1
                return httpx.Response(503, text="unavailable")
            return httpx.Response(200, text=self.feeds.get(channel, atom_feed(channel, [])))
        if path.endswith(".json"):
            post_id = path.split("/comments/")[1].split("/")[0]
            return httpx.Response(200, json=comments_listing(post_id, self.comments.get(post_id, [])))
        return httpx.Response(404)

    def fetcher(self, **kwargs: Any) -> FeedFetcher:
        kwargs.setdefault("max_retries", 1)
        kwargs.setdefault("retry_backoff", 0)
        return FeedFetcher(
            transport=httpx.MockTransport(self.handler),
            limiter=RateLimiter(0),
            **kwargs,
        )


@pytest.fixture
def feed_server():
    return FeedServer()
