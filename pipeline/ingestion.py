"""One ingestion cycle: fetch, store, classify, score and roll up a keyword."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from config.settings import settings
from core.errors import CycleInProgressError
from core.models import CycleOptions, CycleResult, FetchResult, ItemKind, normalize_keyword
from data.database import SessionFactory, get_session, utcnow
from data.repositories import ItemRepository, KeywordRepository, RunLogRepository
from data.schema import DBKeyword
from pipeline.classifier import ClassificationContext, ClassifierAdapter
from pipeline.feed import FeedFetcher, validate_limits
from pipeline.trends import TrendAggregator

log = logging.getLogger(__name__)

BroadcastFn = Callable[[dict[str, Any]], Awaitable[None]]


def _is_fresh(record: DBKeyword, now: datetime) -> bool:
    if record.last_searched is None:
        return False
    return now - record.last_searched < timedelta(minutes=settings.FETCH_FRESHNESS_MINUTES)


def _run_status(result: CycleResult) -> str:
    if not result.success:
        return "failed"
    return "partial" if result.errors else "success"


class IngestionService:
    """Runs cycles; at most one per keyword at a time."""

    def __init__(
        self,
        fetcher: FeedFetcher | None = None,
        classifier: ClassifierAdapter | None = None,
        session_factory: SessionFactory | None = None,
        aggregator: TrendAggregator | None = None,
        broadcast_fn: BroadcastFn | None = None,
    ) -> None:
        self._fetcher = fetcher or FeedFetcher()
        self._classifier = classifier or ClassifierAdapter()
        self._session = session_factory or get_session
        self._aggregator = aggregator or TrendAggregator(self._session)
        self._broadcast = broadcast_fn
        self._in_flight: set[str] = set()

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    async def run_cycle(self, options: CycleOptions, trigger: str = "manual") -> CycleResult:
        """Run one cycle for ``options.keyword``.

        Invalid input raises KeywordValidationError and a keyword that is
        already being processed raises CycleInProgressError; anything that
        goes wrong after the keyword is claimed ends up in ``errors``.
        """
        keyword = normalize_keyword(options.keyword)
        validate_limits(options.max_posts, options.max_comments_per_post)
        if keyword in self._in_flight:
            raise CycleInProgressError(keyword)

        self._in_flight.add(keyword)
        try:
            return await self._run(keyword, options, trigger)
        finally:
            self._in_flight.discard(keyword)

    async def _run(self, keyword: str, options: CycleOptions, trigger: str) -> CycleResult:
        started_at = utcnow()
        t0 = time.monotonic()

        async with self._session() as session:
            repo = KeywordRepository(session)
            record = await repo.get_or_create(keyword)
            # scheduled cycles always fetch; they are already spaced by fetch_interval
            fresh = (
                trigger == "manual"
                and not options.force_refresh
                and _is_fresh(record, started_at)
            )
            stored_channels = record.channels
            claimed = await repo.claim(keyword, started_at)
        if not claimed:
            raise CycleInProgressError(keyword)

        result = CycleResult(keyword=keyword)
        log.info("Cycle started for %r (%s)", keyword, trigger)
        try:
            if fresh:
                log.info("Recent results for %r are fresh; skipping fetch", keyword)
                result.statistics = {
                    **await self._aggregator.statistics(keyword),
                    "cached": True,
                }
                result.success = True
            else:
                fetched = await asyncio.wait_for(
                    self._fetcher.fetch(
                        keyword,
                        options.channels or stored_channels,
                        max_posts=options.max_posts,
                        include_comments=options.include_comments,
                        max_comments_per_post=options.max_comments_per_post,
                    ),
                    timeout=settings.CYCLE_FETCH_TIMEOUT,
                )
                result.total_posts = len(fetched.posts)
                result.total_comments = len(fetched.comments)
                result.errors.extend(fetched.errors)
                result.skipped_channels = list(fetched.failed_channels)

                if fetched.all_channels_failed:
                    result.errors.append(f"All {len(fetched.channels)} channels failed")
                else:
                    counts = await self._store_and_classify(keyword, fetched, options)
                    result.statistics = await self._roll_up(keyword, counts)
                    result.total_stored = counts["stored"]
                    result.total_new = counts["new"]
                    result.success = True
        except asyncio.TimeoutError:
            msg = f"Fetch timed out after {settings.CYCLE_FETCH_TIMEOUT:g}s"
            log.warning("Cycle for %r: %s", keyword, msg)
            result.errors.append(msg)
        except Exception as exc:
            log.exception("Cycle for %r failed", keyword)
            result.errors.append(str(exc) or exc.__class__.__name__)

        result.processing_time = time.monotonic() - t0
        await self._settle(keyword, result, trigger, started_at)

        log.info(
            "Cycle finished for %r | %d posts, %d comments (%d new) | %.1fs | %d errors",
            keyword,
            result.total_posts,
            result.total_comments,
            result.total_new,
            result.processing_time,
            len(result.errors),
        )
        if self._broadcast:
            await self._broadcast(
                {
                    "event": "cycle_complete",
                    "keyword": keyword,
                    "trigger": trigger,
                    "success": result.success,
                    "stored": result.total_stored,
                    "new": result.total_new,
                    "errors": len(result.errors),
                }
            )
        return result

    async def _store_and_classify(
        self, keyword: str, fetched: FetchResult, options: CycleOptions
    ) -> dict[str, int]:
        titles = {p.external_id: p.title for p in fetched.posts}
        pending: list[tuple[ItemKind, int]] = []
        entries: list[tuple[str, ClassificationContext]] = []
        stored = new = 0

        async with self._session() as session:
            items = ItemRepository(session)
            batch = [(ItemKind.POST, p) for p in fetched.posts] + [
                (ItemKind.COMMENT, c) for c in fetched.comments
            ]
            for kind, item in batch:
                outcome = await items.upsert(kind, item, keyword)
                if outcome is None:
                    continue
                stored += 1
                new += outcome.created
                if not (outcome.needs_analysis or options.force_refresh):
                    continue
                if kind is ItemKind.POST:
                    text = f"{item.title}\n\n{item.content}".strip()
                    title = item.title
                else:
                    text = item.content
                    title = titles.get(item.parent_id)
                pending.append((kind, outcome.id))
                entries.append(
                    (text, ClassificationContext(keyword=keyword, channel=item.channel, title=title))
                )
            for kind in ItemKind:
                await items.mark_processing(kind, [i for k, i in pending if k is kind])

        analyses = await self._classifier.classify_many(entries)

        fallback = 0
        try:
            async with self._session() as session:
                items = ItemRepository(session)
                for (kind, item_id), analysis in zip(pending, analyses):
                    await items.attach_analysis(kind, item_id, analysis)
                    fallback += analysis.fallback
                for kind in ItemKind:
                    await items.mark_completed(kind, [i for k, i in pending if k is kind])
        except Exception:
            log.exception("Storing analyses for %r failed", keyword)
            async with self._session() as session:
                items = ItemRepository(session)
                for kind in ItemKind:
                    await items.mark_failed(kind, [i for k, i in pending if k is kind])
            raise

        return {
            "stored": stored,
            "new": new,
            "classified": len(pending) - fallback,
            "fallback": fallback,
        }

    async def _roll_up(self, keyword: str, counts: dict[str, int]) -> dict[str, Any]:
        stats = await self._aggregator.recompute(keyword)
        trending = await self._aggregator.refresh_trending()
        return {
            "sentiment": {
                "positive": stats["sentiment_positive"],
                "negative": stats["sentiment_negative"],
                "neutral": stats["sentiment_neutral"],
            },
            "top_channels": stats["top_channels"],
            "volume": stats["volume"],
            "growth": stats["growth"],
            "recent_activity": stats["recent_activity"],
            "related_keywords": stats["related_keywords"],
            "trending": keyword in trending,
            "classified": counts["classified"],
            "fallback": counts["fallback"],
        }

    async def _settle(
        self, keyword: str, result: CycleResult, trigger: str, started_at: datetime
    ) -> None:
        try:
            async with self._session() as session:
                repo = KeywordRepository(session)
                if result.success:
                    await repo.mark_completed(keyword)
                else:
                    await repo.mark_failed(keyword)
                await RunLogRepository(session).log_run(
                    keyword=keyword,
                    trigger=trigger,
                    status=_run_status(result),
                    items_fetched=result.total_posts + result.total_comments,
                    items_stored=result.total_stored,
                    items_new=result.total_new,
                    error_message="; ".join(result.errors)[:500],
                    duration_seconds=result.processing_time,
                    started_at=started_at,
                )
        except Exception as exc:
            log.exception("Failed to record cycle outcome for %r", keyword)
            result.success = False
            result.errors.append(f"Could not record cycle outcome: {exc}")
