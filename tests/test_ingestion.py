from __future__ import annotations

import asyncio

import pytest

from config.settings import settings
from core.analysis import fallback_analysis
from core.errors import CycleInProgressError, KeywordValidationError
from core.models import CycleOptions, ItemKind
from data.repositories import ItemRepository, KeywordRepository, RunLogRepository
from pipeline.ingestion import IngestionService
from conftest import FakeClassifier, atom_feed


@pytest.fixture
def events():
    return []


@pytest.fixture
def service(session_factory, feed_server, fake_classifier, events):
    async def broadcast(data):
        events.append(data)

    feed_server.feeds["news"] = atom_feed("news", [("a1", "Solar prices"), ("a2", "Solar farms")])
    feed_server.comments["a1"] = ["great news", "finally"]
    return IngestionService(
        fetcher=feed_server.fetcher(),
        classifier=fake_classifier,
        session_factory=session_factory,
        broadcast_fn=broadcast,
    )


async def test_cycle_stores_and_scores_items(service, session_factory, fake_classifier, events):
    result = await service.run_cycle(CycleOptions(keyword="  Solar ", channels=["news"], max_posts=5))

    assert result.success, result.errors
    assert result.keyword == "solar"
    assert (result.total_posts, result.total_comments) == (2, 2)
    assert result.total_stored == 4 and result.total_new == 4
    assert result.statistics["sentiment"]["positive"] == 4
    assert result.statistics["classified"] == 4
    assert len(fake_classifier.calls) == 4

    async with session_factory() as s:
        record = await KeywordRepository(s).get("solar")
        posts = await ItemRepository(s).by_keyword("solar", exact=True)
        runs = await RunLogRepository(s).recent_runs()
    assert record.fetch_status == "completed"
    assert record.search_count == 1
    assert record.volume == 4
    assert {p.weighted_score for p in posts} == {79}
    assert all(p.processing_state == "completed" for p in posts)
    assert runs[0].status == "success" and runs[0].items_new == 4
    assert events[-1]["event"] == "cycle_complete"
    assert events[-1]["keyword"] == "solar"


async def test_repeat_cycle_is_idempotent(service, session_factory, fake_classifier):
    await service.run_cycle(CycleOptions(keyword="solar", channels=["news"]))
    cached = await service.run_cycle(CycleOptions(keyword="solar", channels=["news"]))
    assert cached.success and cached.statistics["cached"]
    assert len(fake_classifier.calls) == 4

    forced = await service.run_cycle(
        CycleOptions(keyword="solar", channels=["news"], force_refresh=True)
    )
    assert forced.success
    assert forced.total_new == 0 and forced.total_stored == 4
    assert len(fake_classifier.calls) == 8

    async with session_factory() as s:
        items = ItemRepository(s)
        assert await items.count(ItemKind.POST, "solar") == 2
        assert await items.count(ItemKind.COMMENT, "solar") == 2


async def test_scheduled_cycle_skips_completed_items(service, fake_classifier):
    await service.run_cycle(CycleOptions(keyword="solar", channels=["news"]))
    again = await service.run_cycle(CycleOptions(keyword="solar", channels=["news"]), trigger="scheduled")
    assert again.success and "cached" not in again.statistics
    assert again.total_new == 0
    assert len(fake_classifier.calls) == 4


async def test_failed_channel_does_not_fail_cycle(service, feed_server, session_factory):
    feed_server.failing.add("broken")
    feed_server.feeds["tech"] = atom_feed("tech", [("t1", "Solar chips")])
    result = await service.run_cycle(
        CycleOptions(keyword="solar", channels=["news", "broken", "tech"], include_comments=False)
    )
    assert result.success
    assert result.skipped_channels == ["broken"]
    assert result.total_posts == 3
    assert len(result.errors) == 1
    async with session_factory() as s:
        runs = await RunLogRepository(s).recent_runs()
    assert runs[0].status == "partial"


async def test_all_channels_failing_marks_keyword_failed(service, feed_server, session_factory):
    feed_server.failing.update({"broken", "down"})
    result = await service.run_cycle(CycleOptions(keyword="solar", channels=["broken", "down"]))

    assert not result.success
    assert result.errors
    async with session_factory() as s:
        record = await KeywordRepository(s).get("solar")
    assert record.fetch_status == "failed"
    assert record.next_scheduled_fetch is not None


async def test_fallback_analysis_is_stored(session_factory, feed_server):
    feed_server.feeds["news"] = atom_feed("news", [("a1", "Solar prices")])
    service = IngestionService(
        fetcher=feed_server.fetcher(),
        classifier=FakeClassifier(fallback_analysis()),
        session_factory=session_factory,
    )
    result = await service.run_cycle(
        CycleOptions(keyword="solar", channels=["news"], include_comments=False)
    )
    assert result.success
    assert result.statistics["fallback"] == 1
    async with session_factory() as s:
        (post,) = await ItemRepository(s).by_keyword("solar")
    assert post.weighted_score == 54
    assert post.sentiment == "neutral"


async def test_keyword_already_processing_is_rejected(service, session_factory):
    async with session_factory() as s:
        repo = KeywordRepository(s)
        await repo.get_or_create("solar")
        await repo.claim("solar")
    with pytest.raises(CycleInProgressError):
        await service.run_cycle(CycleOptions(keyword="solar"))


@pytest.mark.parametrize(
    "options",
    [
        CycleOptions(keyword=""),
        CycleOptions(keyword="solar", max_posts=0),
        CycleOptions(keyword="solar", max_posts=101),
        CycleOptions(keyword="solar", max_comments_per_post=0),
    ],
)
async def test_invalid_options_are_rejected(service, session_factory, options):
    with pytest.raises(KeywordValidationError):
        await service.run_cycle(options)
    async with session_factory() as s:
        assert await KeywordRepository(s).get("solar") is None


async def test_fetch_timeout_is_reported(session_factory, fake_classifier, monkeypatch):
    class SlowFetcher:
        async def fetch(self, *args, **kwargs):
            await asyncio.sleep(1)

    monkeypatch.setattr(settings, "CYCLE_FETCH_TIMEOUT", 0.01)
    service = IngestionService(
        fetcher=SlowFetcher(), classifier=fake_classifier, session_factory=session_factory
    )
    result = await service.run_cycle(CycleOptions(keyword="solar"))
    assert not result.success
    assert "timed out" in result.errors[0]
