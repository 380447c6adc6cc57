from __future__ import annotations

import pytest

from config.settings import settings
from core.errors import FeedParseError, KeywordValidationError
from core.models import FeedPost
from pipeline.feed import extract_post_id, parse_comments, parse_feed, resolve_channels
from conftest import atom_feed, comments_listing


def test_parse_feed_extracts_posts():
    posts = parse_feed(atom_feed("news", [("abc123", "Solar power news")]), "news")
    assert len(posts) == 1
    post = posts[0]
    assert post.external_id == "abc123"
    assert post.title == "Solar power news"
    assert post.content == "Body of Solar power news"
    assert post.author == "author_abc123"
    assert post.channel == "news"
    assert post.permalink == "/r/news/comments/abc123/slug/"
    assert post.published_at.tzinfo is not None


def test_parse_feed_rejects_garbage():
    with pytest.raises(FeedParseError):
        parse_feed("<html><body>not a feed", "news")


def test_extract_post_id_fallbacks():
    assert extract_post_id("https://x/r/a/comments/XyZ9/t/") == "xyz9"
    assert extract_post_id("https://x/r/a/", "t3_q1") == "q1"
    assert extract_post_id("https://x/r/a/").startswith("rss_")


def test_parse_comments_skips_removed_and_non_replies():
    post = FeedPost(
        external_id="p1", title="t", content="", author="a", channel="news",
        link="https://www.reddit.com/r/news/comments/p1/t/",
        permalink="/r/news/comments/p1/t/", published_at=None,
    )
    data = comments_listing("p1", ["first **reply**", "[deleted]", "third"])
    comments = parse_comments(data, post, limit=10)
    assert [c.content for c in comments] == ["first reply", "third"]
    assert comments[0].parent_id == "p1"
    assert comments[0].permalink == "/r/news/comments/p1/t/p1c0/"
    assert comments[0].origin_score == 10
    assert parse_comments({"unexpected": True}, post, limit=10) == []


def test_resolve_channels(monkeypatch):
    monkeypatch.setattr(settings, "DEFAULT_CHANNELS", "news,worldnews")
    assert resolve_channels("anything", ["r/Science", "/r/science/", " "]) == ["science"]
    assert resolve_channels("Climate Change policy") == ["environment", "climatechange"]
    assert resolve_channels("gardening") == ["news", "worldnews"]


async def test_fetch_spreads_limit_and_dedupes(feed_server):
    feed_server.feeds["news"] = atom_feed("news", [("a1", "One"), ("a2", "Two")])
    feed_server.feeds["tech"] = atom_feed("tech", [("a2", "Two again"), ("b1", "Three")])
    feed_server.comments["a1"] = ["nice", "agreed"]

    result = await feed_server.fetcher(comment_posts_per_channel=1).fetch(
        "solar", ["news", "tech"], max_posts=4, max_comments_per_post=5
    )

    assert [p.external_id for p in result.posts] == ["a1", "a2", "b1"]
    assert [c.content for c in result.comments] == ["nice", "agreed"]
    assert result.errors == []
    search = [r for r in feed_server.requests if r.url.path.endswith("search.rss")]
    assert search[0].url.params["q"] == "solar"
    assert search[0].url.params["limit"] == "2"
    assert search[0].url.params["restrict_sr"] == "on"
    assert search[0].headers["user-agent"] == settings.FEED_USER_AGENT


async def test_failed_channel_is_skipped(feed_server):
    feed_server.feeds["news"] = atom_feed("news", [("a1", "One")])
    feed_server.failing.add("broken")

    result = await feed_server.fetcher().fetch(
        "solar", ["broken", "news"], include_comments=False
    )

    assert [p.external_id for p in result.posts] == ["a1"]
    assert result.failed_channels == ["broken"]
    assert len(result.errors) == 1
    assert not result.all_channels_failed


async def test_retries_before_giving_up(feed_server):
    feed_server.failing.add("broken")
    result = await feed_server.fetcher(max_retries=3).fetch("solar", ["broken"], include_comments=False)
    assert result.all_channels_failed
    assert len(feed_server.requests) == 3


async def test_transient_failure_recovers_on_retry(feed_server):
    feed_server.feeds["news"] = atom_feed("news", [("a1", "Solar prices")])
    feed_server.flaky["news"] = 2
    result = await feed_server.fetcher(max_retries=3).fetch("solar", ["news"], include_comments=False)
    assert [p.external_id for p in result.posts] == ["a1"]
    assert result.errors == []
    assert len(feed_server.requests) == 3


async def test_fetch_validates_limits(feed_server):
    with pytest.raises(KeywordValidationError):
        await feed_server.fetcher().fetch("solar", ["news"], max_posts=0)
    with pytest.raises(KeywordValidationError):
        await feed_server.fetcher().fetch("solar", ["news"], max_comments_per_post=51)
