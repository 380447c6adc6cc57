from __future__ import annotations

import asyncio
import logging
from collections import Counter
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from config.settings import settings
from core.errors import CycleInProgressError, KeywordNotFoundError
from core.models import CycleOptions, normalize_keyword
from data.database import SessionFactory, get_session
from data.repositories import KeywordRepository
from pipeline.ingestion import BroadcastFn, IngestionService
from pipeline.trends import keyword_summary

log = logging.getLogger(__name__)

SWEEP_JOB_ID = "keyword_sweep"


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


class KeywordScheduler:
    """Periodically sweeps due keywords through the ingestion service."""

    def __init__(
        self,
        ingestion: IngestionService,
        session_factory: SessionFactory | None = None,
        broadcast_fn: BroadcastFn | None = None,
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        self._ingestion = ingestion
        self._session = session_factory or get_session
        self._broadcast = broadcast_fn
        self._scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self._state = SchedulerState.STOPPED
        self._sweep_lock = asyncio.Lock()
        self._last_sweep: dict[str, Any] | None = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    def start(self) -> bool:
        """Begin periodic sweeps, the first one immediately. False if already running."""
        if self._state is SchedulerState.RUNNING:
            return False
        if not self._scheduler.running:
            self._scheduler.start()
        self._scheduler.add_job(
            self._sweep,
            "interval",
            minutes=settings.SCHEDULER_SWEEP_MINUTES,
            id=SWEEP_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )
        self._state = SchedulerState.RUNNING
        log.info("Keyword scheduler started (sweep every %d min)", settings.SCHEDULER_SWEEP_MINUTES)
        return True

    def stop(self) -> bool:
        """Stop future sweeps; cycles already running are left to finish."""
        if self._state is SchedulerState.STOPPED:
            return False
        if self._scheduler.get_job(SWEEP_JOB_ID):
            self._scheduler.remove_job(SWEEP_JOB_ID)
        self._state = SchedulerState.STOPPED
        log.info("Keyword scheduler stopped")
        return True

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._state = SchedulerState.STOPPED

    async def run_now(self) -> dict[str, Any]:
        return await self._sweep()

    async def _sweep(self) -> dict[str, Any]:
        if self._sweep_lock.locked():
            log.info("Sweep already in progress; skipping")
            return {"skipped": True, "reason": "sweep already in progress"}

        async with self._sweep_lock:
            started = datetime.now(timezone.utc)
            async with self._session() as session:
                due = await KeywordRepository(session).list_due(limit=settings.SCHEDULER_BATCH_SIZE)
                keywords = [k.keyword for k in due]
            log.info("Sweep found %d due keywords: %s", len(keywords), keywords)

            sem = asyncio.Semaphore(max(1, settings.SCHEDULER_WORKERS))

            async def _one(keyword: str) -> str:
                async with sem:
                    try:
                        result = await self._ingestion.run_cycle(
                            CycleOptions(
                                keyword=keyword,
                                max_posts=settings.SCHEDULER_MAX_POSTS,
                                max_comments_per_post=settings.SCHEDULER_MAX_COMMENTS_PER_POST,
                            ),
                            trigger="scheduled",
                        )
                    except CycleInProgressError:
                        return "skipped"
                    except Exception:
                        log.exception("Scheduled cycle for %r failed", keyword)
                        return "failed"
                    return "succeeded" if result.success else "failed"

            outcomes = await asyncio.gather(*(_one(k) for k in keywords))
            tally = Counter(outcomes)
            summary = {
                "started_at": started.isoformat(),
                "duration_seconds": round((datetime.now(timezone.utc) - started).total_seconds(), 2),
                "processed": len(keywords),
                "succeeded": tally["succeeded"],
                "failed": tally["failed"],
                "skipped": tally["skipped"],
                "keywords": dict(zip(keywords, outcomes)),
            }
            self._last_sweep = summary

        log.info(
            "Sweep finished: %d processed, %d succeeded, %d failed, %d skipped",
            summary["processed"],
            summary["succeeded"],
            summary["failed"],
            summary["skipped"],
        )
        if self._broadcast:
            await self._broadcast({"event": "sweep_complete", **summary})
        return summary

    async def add_keyword(
        self,
        keyword: str,
        fetch_interval: int = 24,
        channels: list[str] | None = None,
        auto_fetch: bool = True,
    ) -> dict[str, Any]:
        keyword = normalize_keyword(keyword)
        async with self._session() as session:
            record = await KeywordRepository(session).register(
                keyword, fetch_interval=fetch_interval, auto_fetch=auto_fetch, channels=channels
            )
            summary = keyword_summary(record)
        if auto_fetch:
            log.info("Scheduled %r every %dh", keyword, fetch_interval)
        else:
            log.info("Registered %r with automatic fetching off", keyword)
        return summary

    async def remove_keyword(self, keyword: str) -> None:
        keyword = normalize_keyword(keyword)
        async with self._session() as session:
            removed = await KeywordRepository(session).deactivate(keyword)
        if not removed:
            raise KeywordNotFoundError(keyword)
        log.info("Removed %r from scheduling", keyword)

    async def update_interval(self, keyword: str, hours: int) -> dict[str, Any]:
        keyword = normalize_keyword(keyword)
        async with self._session() as session:
            record = await KeywordRepository(session).update_interval(keyword, hours)
            return keyword_summary(record)

    async def scheduled_keywords(self) -> list[dict[str, Any]]:
        async with self._session() as session:
            return [keyword_summary(k) for k in await KeywordRepository(session).list_scheduled()]

    async def status(self) -> dict[str, Any]:
        async with self._session() as session:
            counts = await KeywordRepository(session).counts()
        job = self._scheduler.get_job(SWEEP_JOB_ID) if self._scheduler.running else None
        next_sweep = job.next_run_time if job else None
        return {
            "state": self._state.value,
            "running": self._state is SchedulerState.RUNNING,
            "sweep_minutes": settings.SCHEDULER_SWEEP_MINUTES,
            "next_sweep": next_sweep.isoformat() if next_sweep else None,
            "keywords": counts,
            "in_flight": sorted(self._ingestion.in_flight),
            "last_sweep": self._last_sweep,
        }
