from __future__ import annotations

import logging
from typing import Any

from config.settings import settings
from core.errors import KeywordNotFoundError
from core.models import ItemKind, normalize_keyword
from data.database import SessionFactory, get_session, isoformat_utc, utcnow
from data.repositories import ItemRepository, KeywordRepository
from data.schema import DBKeyword

log = logging.getLogger(__name__)


def growth_percent(current: int, prior: int) -> float:
    """Change of the current window against the prior one, in percent."""
    if prior:
        return round((current - prior) / prior * 100, 1)
    return 100.0 if current else 0.0


def keyword_summary(k: DBKeyword) -> dict[str, Any]:
    return {
        "keyword": k.keyword,
        "search_count": k.search_count,
        "last_searched": isoformat_utc(k.last_searched),
        "trending": k.trending,
        "sentiment": {
            "positive": k.sentiment_positive,
            "negative": k.sentiment_negative,
            "neutral": k.sentiment_neutral,
            "total": k.sentiment_total,
        },
        "volume": k.volume,
        "growth": k.growth,
        "recent_activity": k.recent_activity,
        "related_keywords": k.related_keywords or [],
        "top_channels": k.top_channels or [],
        "channels": k.channels,
        "fetch_status": k.fetch_status,
        "auto_fetch": k.auto_fetch,
        "fetch_interval": k.fetch_interval,
        "last_fetched": isoformat_utc(k.last_fetched),
        "next_scheduled_fetch": isoformat_utc(k.next_scheduled_fetch),
        "is_active": k.is_active,
    }


class TrendAggregator:
    """Maintains the per-keyword rollups and the trending flags."""

    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        self._session = session_factory or get_session

    async def recompute(self, keyword: str) -> dict[str, Any]:
        now = utcnow()
        async with self._session() as session:
            items = ItemRepository(session)
            volume = await items.count(ItemKind.POST, keyword) + await items.count(
                ItemKind.COMMENT, keyword
            )
            sentiment = await items.sentiment_counts(keyword)
            channels = await items.top_channels(keyword)
            current, prior = await items.activity_counts(keyword, now, settings.TREND_WINDOW_HOURS)
            related = await items.related_keywords(keyword)

            stats = {
                "volume": volume,
                "sentiment_positive": sentiment["positive"],
                "sentiment_negative": sentiment["negative"],
                "sentiment_neutral": sentiment["neutral"],
                "sentiment_total": sum(sentiment.values()),
                "top_channels": channels,
                "growth": growth_percent(current, prior),
                "recent_activity": current,
                "related_keywords": related,
            }
            await KeywordRepository(session).update_stats(keyword, **stats)

        log.debug("Recomputed %r: volume=%d recent=%d", keyword, volume, current)
        return stats

    async def refresh_trending(self) -> list[str]:
        """Flag the top active keywords by recent activity, then volume."""
        async with self._session() as session:
            repo = KeywordRepository(session)
            ranked = sorted(
                await repo.list_active(),
                key=lambda k: (-k.recent_activity, -k.volume, k.keyword),
            )
            trending = [
                k.keyword
                for rank, k in enumerate(ranked)
                if rank < settings.TREND_TOP_N
                and (
                    k.recent_activity >= settings.TREND_MIN_RECENT
                    or k.volume >= settings.TREND_MIN_VOLUME
                )
            ]
            await repo.set_trending(set(trending))
        log.info("Trending keywords: %s", trending)
        return trending

    async def trending(self, limit: int = 10) -> list[dict[str, Any]]:
        async with self._session() as session:
            records = await KeywordRepository(session).trending(limit)
            return [keyword_summary(k) for k in records]

    async def statistics(self, keyword: str) -> dict[str, Any]:
        keyword = normalize_keyword(keyword)
        async with self._session() as session:
            record = await KeywordRepository(session).get(keyword)
            if record is None:
                raise KeywordNotFoundError(keyword)
            items = ItemRepository(session)
            posts = await items.count(ItemKind.POST, keyword)
            comments = await items.count(ItemKind.COMMENT, keyword)
            sentiment = await items.sentiment_counts(keyword)
            classified = sum(sentiment.values())
            return {
                **keyword_summary(record),
                "total_posts": posts,
                "total_comments": comments,
                "sentiment_distribution": {
                    label: {
                        "count": n,
                        "percentage": round(n / classified * 100, 1) if classified else 0.0,
                    }
                    for label, n in sentiment.items()
                },
                "average_score": await items.average_score(keyword),
            }
