"""Channel search feed fetcher (Atom/RSS search results + per-post reply JSON)."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import re
import time
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse

import feedparser
import httpx

from config.settings import settings, split_csv
from core.errors import FeedParseError, KeywordValidationError
from core.models import FeedComment, FeedPost, FetchResult
from pipeline.base import RateLimiter
from pipeline.cleaning import (
    MAX_CONTENT_LENGTH,
    clean_author,
    clean_html,
    clean_text,
    clean_title,
)

log = logging.getLogger(__name__)

MAX_POSTS_LIMIT = 100
MAX_COMMENTS_LIMIT = 50

_POST_ID_RE = re.compile(r"/comments/([a-z0-9]+)", re.IGNORECASE)
_REMOVED_BODIES = frozenset({"[deleted]", "[removed]"})


def extract_post_id(link: str, entry_id: str | None = None) -> str:
    match = _POST_ID_RE.search(link or "")
    if match:
        return match.group(1).lower()
    if entry_id:
        return entry_id.removeprefix("t3_")
    return "rss_" + hashlib.sha1((link or "").encode("utf-8")).hexdigest()[:12]


def _entry_time(entry: Any) -> datetime:
    for key in ("published_parsed", "updated_parsed"):
        parsed = entry.get(key)
        if parsed:
            return datetime(*parsed[:6], tzinfo=timezone.utc)
    return datetime.now(timezone.utc)


def parse_feed(payload: str | bytes, channel: str) -> list[FeedPost]:
    """Parse an Atom or RSS search payload into posts for *channel*."""
    if isinstance(payload, str):
        # bytes keep feedparser from treating the payload as a URL or path
        payload = payload.encode("utf-8")
    parsed = feedparser.parse(payload)
    if parsed.bozo and not parsed.entries:
        raise FeedParseError(f"malformed feed: {parsed.get('bozo_exception')}")

    posts: list[FeedPost] = []
    for entry in parsed.entries:
        link = (entry.get("link") or "").strip()
        title = clean_title(entry.get("title"))
        if not title and not link:
            continue

        if entry.get("content"):
            description = entry.content[0].get("value", "")
        else:
            description = entry.get("summary", "")

        posts.append(
            FeedPost(
                external_id=extract_post_id(link, entry.get("id")),
                title=title,
                content=clean_html(description),
                author=clean_author(entry.get("author")),
                channel=channel,
                link=link,
                permalink=urlparse(link).path or link,
                published_at=_entry_time(entry),
            )
        )
    return posts


def parse_comments(data: Any, post: FeedPost, limit: int) -> list[FeedComment]:
    """Pick up to *limit* live top-level replies from a post's JSON listing."""
    if not isinstance(data, list) or len(data) < 2:
        return []
    listing = data[1] if isinstance(data[1], dict) else {}
    children = listing.get("data", {}).get("children", [])

    comments: list[FeedComment] = []
    for child in children:
        if len(comments) >= limit:
            break
        if child.get("kind") != "t1":
            continue
        raw = child.get("data") or {}
        body = (raw.get("body") or "").strip()
        if not body or body in _REMOVED_BODIES:
            continue
        content = clean_text(body)[:MAX_CONTENT_LENGTH]
        if not content:
            continue

        comment_id = raw.get("id") or f"{post.external_id}_{len(comments)}"
        created = raw.get("created_utc")
        comments.append(
            FeedComment(
                external_id=comment_id,
                parent_id=post.external_id,
                content=content,
                author=clean_author(raw.get("author")),
                channel=post.channel,
                permalink=f"{post.permalink.rstrip('/')}/{comment_id}/",
                published_at=datetime.fromtimestamp(created, tz=timezone.utc)
                if created
                else datetime.now(timezone.utc),
                origin_score=raw.get("score"),
            )
        )
    return comments


def _normalize_channel(name: str) -> str:
    name = name.strip().lower()
    for prefix in ("/r/", "r/"):
        if name.startswith(prefix):
            name = name[len(prefix):]
    return name.strip("/")


def resolve_channels(keyword: str, channels: list[str] | None = None) -> list[str]:
    """Explicit channels win, then the topic map, then the configured defaults."""
    if channels:
        explicit = [_normalize_channel(c) for c in channels if c and c.strip()]
        explicit = list(dict.fromkeys(c for c in explicit if c))
        if explicit:
            return explicit

    lowered = keyword.lower()
    for topic, topic_channels in settings.TOPIC_CHANNELS.items():
        if topic.lower() in lowered:
            return split_csv(topic_channels)
    return split_csv(settings.DEFAULT_CHANNELS)


def validate_limits(max_posts: int, max_comments_per_post: int) -> None:
    if not 1 <= max_posts <= MAX_POSTS_LIMIT:
        raise KeywordValidationError(f"max_posts must be between 1 and {MAX_POSTS_LIMIT}")
    if not 1 <= max_comments_per_post <= MAX_COMMENTS_LIMIT:
        raise KeywordValidationError(
            f"max_comments_per_post must be between 1 and {MAX_COMMENTS_LIMIT}"
        )


class FeedFetcher:
    """Fetches keyword search results channel by channel, politely."""

    def __init__(
        self,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        limiter: RateLimiter | None = None,
        max_retries: int | None = None,
        retry_backoff: float | None = None,
        comment_posts_per_channel: int | None = None,
    ) -> None:
        self._transport = transport
        self._limiter = limiter or RateLimiter(settings.FEED_REQUEST_DELAY)
        self._max_retries = max(1, max_retries if max_retries is not None else settings.FEED_MAX_RETRIES)
        self._retry_backoff = (
            retry_backoff if retry_backoff is not None else settings.FEED_RETRY_BACKOFF
        )
        self._comment_posts = (
            comment_posts_per_channel
            if comment_posts_per_channel is not None
            else settings.FEED_COMMENT_POSTS_PER_CHANNEL
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={"User-Agent": settings.FEED_USER_AGENT},
            follow_redirects=True,
            timeout=settings.FEED_REQUEST_TIMEOUT,
            transport=self._transport,
        )

    async def fetch(
        self,
        keyword: str,
        channels: list[str] | None = None,
        *,
        max_posts: int = 20,
        include_comments: bool = True,
        max_comments_per_post: int = 10,
    ) -> FetchResult:
        validate_limits(max_posts, max_comments_per_post)
        channels = resolve_channels(keyword, channels)
        per_channel = max(1, math.ceil(max_posts / len(channels)))

        posts: list[FeedPost] = []
        comments: list[FeedComment] = []
        errors: list[str] = []
        failed: list[str] = []
        seen: set[str] = set()
        t0 = time.monotonic()

        log.info("Fetching %r from %d channels: %s", keyword, len(channels), channels)

        async with self._client() as client:
            for channel in channels:
                try:
                    channel_posts = await self._fetch_channel(client, keyword, channel, per_channel)
                except Exception as exc:
                    msg = f"r/{channel}: {exc}"
                    log.warning("Skipping channel %s", msg)
                    errors.append(msg)
                    failed.append(channel)
                    continue

                fresh = [p for p in channel_posts if p.external_id not in seen]
                fresh = fresh[: max(0, max_posts - len(posts))]
                seen.update(p.external_id for p in fresh)
                posts.extend(fresh)
                log.info("r/%s: %d posts for %r", channel, len(fresh), keyword)

                if not include_comments:
                    continue
                for post in fresh[: self._comment_posts]:
                    try:
                        comments.extend(
                            await self._fetch_comments(client, post, max_comments_per_post)
                        )
                    except Exception as exc:
                        msg = f"comments for {post.external_id}: {exc}"
                        log.warning("%s", msg)
                        errors.append(msg)

        return FetchResult(
            keyword=keyword,
            channels=channels,
            posts=posts,
            comments=comments,
            errors=errors,
            failed_channels=failed,
            duration_seconds=time.monotonic() - t0,
        )

    async def _fetch_channel(
        self, client: httpx.AsyncClient, keyword: str, channel: str, limit: int
    ) -> list[FeedPost]:
        url = f"{settings.FEED_BASE_URL}/r/{channel}/search.rss"
        params = {
            "q": keyword,
            "restrict_sr": "on",
            "limit": limit,
            "sort": "relevance",
        }
        attempt = 1
        while True:
            await self._limiter.wait()
            try:
                resp = await client.get(url, params=params)
                resp.raise_for_status()
                return parse_feed(resp.content, channel)[:limit]
            except (httpx.HTTPError, FeedParseError) as exc:
                log.debug("Attempt %d/%d failed for r/%s: %s", attempt, self._max_retries, channel, exc)
                if attempt >= self._max_retries:
                    raise
            await asyncio.sleep(attempt * self._retry_backoff)
            attempt += 1

    async def _fetch_comments(
        self, client: httpx.AsyncClient, post: FeedPost, limit: int
    ) -> list[FeedComment]:
        if not post.link:
            return []
        await self._limiter.wait()
        resp = await client.get(
            f"{post.link.split('?')[0].rstrip('/')}.json",
            params={"limit": limit, "raw_json": 1},
        )
        resp.raise_for_status()
        comments = parse_comments(resp.json(), post, limit)
        log.debug("%d comments for %s", len(comments), post.external_id)
        return comments
