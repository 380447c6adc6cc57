from __future__ import annotations

from datetime import timedelta

import pytest

from config.settings import settings
from core.errors import KeywordNotFoundError, KeywordValidationError
from core.models import normalize_keyword
from data.database import utcnow
from data.repositories import KeywordRepository


@pytest.mark.parametrize(
    "raw, expected",
    [("  Climate   Change ", "climate change"), ("AI", "ai")],
)
def test_normalize_keyword(raw, expected):
    assert normalize_keyword(raw) == expected


@pytest.mark.parametrize("bad", ["", "   ", None, 42, "x" * 101])
def test_normalize_keyword_rejects(bad):
    with pytest.raises(KeywordValidationError):
        normalize_keyword(bad)


async def test_new_keyword_is_due_immediately(session_factory):
    async with session_factory() as s:
        repo = KeywordRepository(s)
        record = await repo.register("solar", fetch_interval=6)
        assert record.next_scheduled_fetch is None
        assert [k.keyword for k in await repo.list_due()] == ["solar"]


@pytest.mark.parametrize("hours", [0, 169, 200, -1, 2.5])
async def test_interval_out_of_range_is_rejected(session_factory, hours):
    async with session_factory() as s:
        repo = KeywordRepository(s)
        with pytest.raises(KeywordValidationError):
            await repo.register("solar", fetch_interval=hours)
        assert await repo.get("solar") is None


async def test_update_interval(session_factory):
    async with session_factory() as s:
        repo = KeywordRepository(s)
        await repo.register("solar")
        before = utcnow()
        record = await repo.update_interval("solar", 12)
        assert record.fetch_interval == 12
        assert record.next_scheduled_fetch >= before + timedelta(hours=12)
        with pytest.raises(KeywordValidationError):
            await repo.update_interval("solar", 0)
        with pytest.raises(KeywordNotFoundError):
            await repo.update_interval("unknown", 12)


async def test_claim_allows_one_cycle(session_factory):
    async with session_factory() as s:
        repo = KeywordRepository(s)
        await repo.get_or_create("solar")
        assert await repo.claim("solar")
        assert not await repo.claim("solar")


async def test_stale_processing_claim_is_reclaimed(session_factory):
    now = utcnow()
    async with session_factory() as s:
        repo = KeywordRepository(s)
        await repo.get_or_create("solar")
        stale = now - timedelta(minutes=settings.STALE_PROCESSING_MINUTES + 5)
        assert await repo.claim("solar", stale)
        assert await repo.claim("solar", now)


async def test_completion_schedules_next_fetch(session_factory):
    async with session_factory() as s:
        repo = KeywordRepository(s)
        await repo.register("solar", fetch_interval=6)
        await repo.claim("solar")
    async with session_factory() as s:
        record = await KeywordRepository(s).mark_completed("solar")
        assert record.fetch_status == "completed"
        assert record.search_count == 1
        assert record.next_scheduled_fetch == record.last_fetched + timedelta(hours=6)
        assert await KeywordRepository(s).list_due() == []


async def test_failure_retries_after_backoff(session_factory):
    async with session_factory() as s:
        repo = KeywordRepository(s)
        await repo.register("solar", fetch_interval=24)
        await repo.claim("solar")
        now = utcnow()
        record = await repo.mark_failed("solar", now)
        assert record.fetch_status == "failed"
        assert record.next_scheduled_fetch == now + timedelta(hours=settings.FAILURE_RETRY_HOURS)
        assert await repo.list_due(now) == []
        due = await repo.list_due(now + timedelta(hours=settings.FAILURE_RETRY_HOURS))
        assert [k.keyword for k in due] == ["solar"]


async def test_completing_unknown_keyword_raises(session_factory):
    async with session_factory() as s:
        with pytest.raises(KeywordNotFoundError):
            await KeywordRepository(s).mark_completed("nothing")


async def test_due_keywords_ordered_stalest_first(session_factory):
    now = utcnow()
    async with session_factory() as s:
        repo = KeywordRepository(s)
        for kw in ("recent", "never", "old"):
            await repo.register(kw)
        await repo.update_stats("recent", last_fetched=now - timedelta(hours=1))
        await repo.update_stats("old", last_fetched=now - timedelta(hours=9))
        due = await repo.list_due(now, limit=2)
    assert [k.keyword for k in due] == ["never", "old"]


async def test_deactivated_keyword_is_not_scheduled(session_factory):
    async with session_factory() as s:
        repo = KeywordRepository(s)
        await repo.register("solar")
        assert await repo.deactivate("solar")
        assert not await repo.deactivate("solar")
        assert await repo.list_due() == []
        assert await repo.list_scheduled() == []
        counts = await repo.counts()
    assert counts["active"] == 0


async def test_reregistering_reactivates(session_factory):
    async with session_factory() as s:
        repo = KeywordRepository(s)
        await repo.register("solar")
        await repo.deactivate("solar")
        record = await repo.register("solar", fetch_interval=48, channels=["science"])
        assert record.is_active and record.auto_fetch
        assert record.channels == ["science"]
        assert record.next_scheduled_fetch is not None
