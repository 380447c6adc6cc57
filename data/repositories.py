from __future__ import annotations

import heapq
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Union

from sqlalchemy import Integer, and_, case, func, or_, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_upsert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from config.settings import settings
from core.analysis import AnalysisRecord
from core.errors import KeywordNotFoundError, KeywordValidationError
from core.models import FeedComment, FeedPost, FetchStatus, ItemKind, ProcessingState
from core.scoring import SENTIMENT_SCALE, UNKNOWN_SENTIMENT_SCORE, weighted_score
from data.database import as_naive_utc, isoformat_utc, utcnow
from data.schema import DBFeedComment, DBFeedPost, DBFetchRun, DBKeyword

DBFeedItem = Union[DBFeedPost, DBFeedComment]

MIN_FETCH_INTERVAL = 1
MAX_FETCH_INTERVAL = 168
TOP_CHANNEL_LIMIT = 10

_MODELS: dict[ItemKind, type[DBFeedPost] | type[DBFeedComment]] = {
    ItemKind.POST: DBFeedPost,
    ItemKind.COMMENT: DBFeedComment,
}

SORT_COLUMNS = ("weighted_score", "published_at", "origin_score", "created_at")

# columns refreshed when an upsert hits an existing row
_REFRESHABLE = {
    ItemKind.POST: ("author", "title", "content", "link", "permalink", "updated_at"),
    ItemKind.COMMENT: ("author", "content", "permalink", "parent_id", "updated_at"),
}
_ANALYSIS_COLUMNS = frozenset({"analysis", "sentiment", "weighted_score"})

# ── helpers ──────────────────────────────────────────────────────────


def _model(kind: ItemKind) -> type[DBFeedPost] | type[DBFeedComment]:
    return _MODELS[ItemKind(kind)]


def _kinds(item_type: str) -> list[ItemKind]:
    if item_type == "posts":
        return [ItemKind.POST]
    if item_type == "comments":
        return [ItemKind.COMMENT]
    return [ItemKind.POST, ItemKind.COMMENT]


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _analysis_values(analysis: AnalysisRecord) -> dict[str, Any]:
    """The only place a stored weighted score is derived."""
    return {
        "analysis": analysis.model_dump(),
        "sentiment": analysis.sentiment.classification,
        "weighted_score": weighted_score(analysis),
    }


def _sentiment_points(model):
    return case(
        *[(model.sentiment == label, points) for label, points in SENTIMENT_SCALE.items()],
        else_=UNKNOWN_SENTIMENT_SCORE,
    )


def validate_interval(hours: Any) -> int:
    if isinstance(hours, bool) or not isinstance(hours, (int, float)) or int(hours) != hours:
        raise KeywordValidationError("Fetch interval must be a whole number of hours")
    if not MIN_FETCH_INTERVAL <= hours <= MAX_FETCH_INTERVAL:
        raise KeywordValidationError(
            f"Fetch interval must be between {MIN_FETCH_INTERVAL} and {MAX_FETCH_INTERVAL} hours"
        )
    return int(hours)


@dataclass
class UpsertOutcome:
    id: int
    created: bool
    needs_analysis: bool


@dataclass
class ItemPage:
    items: list[tuple[ItemKind, DBFeedItem]]
    total: int
    page: int
    limit: int

    @property
    def has_next(self) -> bool:
        return self.page * self.limit < self.total

    @property
    def has_prev(self) -> bool:
        return self.page > 1


# ── ItemRepository ───────────────────────────────────────────────────


class ItemRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._s = session

    async def upsert(
        self,
        kind: ItemKind,
        item: FeedPost | FeedComment,
        keyword: str,
        analysis: AnalysisRecord | None = None,
    ) -> UpsertOutcome | None:
        """Insert or refresh one item keyed by (external_id, keyword).

        Returns None when the matching row has been soft-deleted; such rows
        are neither resurrected nor overwritten.
        """
        model = _model(kind)
        existing = (
            await self._s.execute(
                select(model.id, model.processing_state, model.is_active).where(
                    model.external_id == item.external_id, model.keyword == keyword
                )
            )
        ).first()
        if existing is not None and not existing.is_active:
            return None

        now = utcnow()
        values: dict[str, Any] = {
            "external_id": item.external_id,
            "keyword": keyword,
            "author": item.author,
            "channel": item.channel.lower(),
            "content": item.content,
            "permalink": item.permalink,
            "origin_score": item.origin_score,
            "published_at": as_naive_utc(item.published_at),
            "processing_state": ProcessingState.PENDING.value,
            "processing_attempts": 0,
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        }
        if kind is ItemKind.POST:
            values.update(title=item.title, link=item.link)
        else:
            values.update(parent_id=item.parent_id)
        if analysis is not None:
            values.update(_analysis_values(analysis))

        stmt = sqlite_upsert(model).values(**values)
        refresh = {col: values[col] for col in _REFRESHABLE[ItemKind(kind)]}
        refresh["origin_score"] = func.coalesce(stmt.excluded.origin_score, model.origin_score)
        if analysis is not None:
            refresh.update(_analysis_values(analysis))
        stmt = stmt.on_conflict_do_update(
            index_elements=["external_id", "keyword"],
            set_=refresh,
            where=model.is_active.is_(True),
        ).returning(model.id)

        row_id = (await self._s.execute(stmt)).scalar_one_or_none()
        if row_id is None:
            return None

        created = existing is None
        needs_analysis = analysis is None and (
            created or existing.processing_state != ProcessingState.COMPLETED.value
        )
        return UpsertOutcome(id=row_id, created=created, needs_analysis=needs_analysis)

    async def attach_analysis(self, kind: ItemKind, item_id: int, analysis: AnalysisRecord) -> int:
        """Store a new analysis and the score derived from it. Returns the score."""
        model = _model(kind)
        values = _analysis_values(analysis)
        await self._s.execute(
            update(model)
            .where(model.id == item_id, model.is_active.is_(True))
            .values(**values, updated_at=utcnow())
        )
        return values["weighted_score"]

    async def update_fields(self, kind: ItemKind, item_id: int, **fields: Any) -> None:
        """Update unrelated mutable fields; analysis and score are left alone."""
        forbidden = _ANALYSIS_COLUMNS.intersection(fields)
        if forbidden:
            raise ValueError(f"use attach_analysis to change {sorted(forbidden)}")
        model = _model(kind)
        await self._s.execute(
            update(model)
            .where(model.id == item_id, model.is_active.is_(True))
            .values(**fields, updated_at=utcnow())
        )

    async def _set_state(self, kind: ItemKind, ids: list[int], state: ProcessingState, **extra: Any) -> None:
        if not ids:
            return
        model = _model(kind)
        await self._s.execute(
            update(model)
            .where(model.id.in_(ids), model.is_active.is_(True))
            .values(processing_state=state.value, updated_at=utcnow(), **extra)
        )

    async def mark_processing(self, kind: ItemKind, ids: list[int]) -> None:
        model = _model(kind)
        await self._set_state(
            kind, ids, ProcessingState.PROCESSING,
            processing_attempts=model.processing_attempts + 1,
        )

    async def mark_completed(self, kind: ItemKind, ids: list[int]) -> None:
        await self._set_state(kind, ids, ProcessingState.COMPLETED, last_processed=utcnow())

    async def mark_failed(self, kind: ItemKind, ids: list[int]) -> None:
        await self._set_state(kind, ids, ProcessingState.FAILED, last_processed=utcnow())

    async def deactivate(self, kind: ItemKind, item_id: int) -> None:
        model = _model(kind)
        await self._s.execute(
            update(model).where(model.id == item_id).values(is_active=False, updated_at=utcnow())
        )

    async def get(self, kind: ItemKind, item_id: int) -> DBFeedItem | None:
        model = _model(kind)
        return await self._s.scalar(
            select(model).where(model.id == item_id, model.is_active.is_(True))
        )

    def _filtered(
        self,
        kind: ItemKind,
        *,
        keyword: str | None = None,
        exact: bool = True,
        sentiment: str | None = None,
        channel: str | None = None,
    ):
        model = _model(kind)
        q = select(model).where(model.is_active.is_(True))
        if keyword:
            if exact:
                q = q.where(model.keyword == keyword.lower())
            else:
                q = q.where(model.keyword.ilike(f"%{_escape_like(keyword)}%", escape="\\"))
        if sentiment:
            q = q.where(model.sentiment == sentiment)
        if channel:
            q = q.where(model.channel == channel.lower())
        return q

    async def by_keyword(
        self, keyword: str, kind: ItemKind = ItemKind.POST, *, exact: bool = False, limit: int = 50
    ) -> list[DBFeedItem]:
        """Items for *keyword*, best score first, then most recent."""
        model = _model(kind)
        q = (
            self._filtered(kind, keyword=keyword, exact=exact)
            .order_by(model.weighted_score.desc(), model.published_at.desc())
            .limit(limit)
        )
        return list((await self._s.execute(q)).scalars().all())

    async def by_channel(
        self, channel: str, kind: ItemKind = ItemKind.POST, *, limit: int = 50
    ) -> list[DBFeedItem]:
        model = _model(kind)
        q = (
            self._filtered(kind, channel=channel)
            .order_by(model.weighted_score.desc(), model.published_at.desc())
            .limit(limit)
        )
        return list((await self._s.execute(q)).scalars().all())

    async def count(self, kind: ItemKind, keyword: str | None = None, **filters: Any) -> int:
        model = _model(kind)
        sub = self._filtered(kind, keyword=keyword, **filters).with_only_columns(
            func.count(model.id)
        )
        return await self._s.scalar(sub) or 0

    async def list_items(
        self,
        *,
        keyword: str | None = None,
        item_type: str = "both",
        exact: bool = False,
        sentiment: str | None = None,
        channel: str | None = None,
        sort_by: str = "weighted_score",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 50,
    ) -> ItemPage:
        if sort_by not in SORT_COLUMNS:
            sort_by = "weighted_score"
        descending = sort_order != "asc"
        offset = (max(page, 1) - 1) * limit
        filters = {"keyword": keyword, "exact": exact, "sentiment": sentiment, "channel": channel}

        per_kind: list[list[tuple[ItemKind, DBFeedItem]]] = []
        total = 0
        for kind in _kinds(item_type):
            model = _model(kind)
            col = func.coalesce(getattr(model, sort_by), 0) if sort_by == "origin_score" else getattr(model, sort_by)
            order = (col.desc(), model.published_at.desc(), model.id.desc()) if descending else (
                col.asc(), model.published_at.asc(), model.id.asc()
            )
            q = self._filtered(kind, **filters).order_by(*order).limit(offset + limit)
            rows = (await self._s.execute(q)).scalars().all()
            per_kind.append([(kind, r) for r in rows])
            total += await self.count(kind, **filters)

        def sort_key(entry: tuple[ItemKind, DBFeedItem]):
            value = getattr(entry[1], sort_by)
            if value is None:
                value = 0
            return (value, entry[1].published_at)

        merged = list(heapq.merge(*per_kind, key=sort_key, reverse=descending))
        return ItemPage(items=merged[offset: offset + limit], total=total, page=max(page, 1), limit=limit)

    async def sentiment_counts(self, keyword: str | None = None, *, exact: bool = True) -> dict[str, int]:
        counts = {label: 0 for label in SENTIMENT_SCALE}
        for kind in ItemKind:
            model = _model(kind)
            q = (
                self._filtered(kind, keyword=keyword, exact=exact)
                .where(model.sentiment.is_not(None))
                .with_only_columns(model.sentiment, func.count(model.id))
                .group_by(model.sentiment)
            )
            for label, n in (await self._s.execute(q)).all():
                if label in counts:
                    counts[label] += n
        return counts

    async def average_score(self, keyword: str) -> float:
        total = weighted = 0
        for kind in ItemKind:
            model = _model(kind)
            q = self._filtered(kind, keyword=keyword).with_only_columns(
                func.count(model.id), func.coalesce(func.sum(model.weighted_score), 0)
            )
            n, s = (await self._s.execute(q)).one()
            total += n
            weighted += s
        return round(weighted / total, 1) if total else 0.0

    async def top_channels(self, keyword: str, limit: int = TOP_CHANNEL_LIMIT) -> list[dict[str, Any]]:
        """Channels by item count, each with its average sentiment score."""
        merged: dict[str, list[int]] = {}
        for kind in ItemKind:
            model = _model(kind)
            q = (
                self._filtered(kind, keyword=keyword)
                .with_only_columns(
                    model.channel,
                    func.count(model.id),
                    func.sum(case((model.sentiment.is_not(None), _sentiment_points(model)), else_=0)),
                    func.count(model.sentiment),
                )
                .group_by(model.channel)
            )
            for name, n, points, classified in (await self._s.execute(q)).all():
                acc = merged.setdefault(name, [0, 0, 0])
                acc[0] += n
                acc[1] += points or 0
                acc[2] += classified

        ranked = sorted(merged.items(), key=lambda kv: (-kv[1][0], kv[0]))[:limit]
        return [
            {
                "name": name,
                "count": n,
                "avg_sentiment": round(points / classified) if classified else UNKNOWN_SENTIMENT_SCORE,
            }
            for name, (n, points, classified) in ranked
        ]

    async def activity_counts(
        self, keyword: str, now: datetime, window_hours: int
    ) -> tuple[int, int]:
        """Items published in the current window and in the window before it."""
        current_start = now - timedelta(hours=window_hours)
        prior_start = current_start - timedelta(hours=window_hours)
        current = prior = 0
        for kind in ItemKind:
            model = _model(kind)
            q = self._filtered(kind, keyword=keyword).with_only_columns(
                func.coalesce(func.sum(case((model.published_at >= current_start, 1), else_=0)), 0),
                func.coalesce(
                    func.sum(
                        case(
                            (and_(model.published_at >= prior_start, model.published_at < current_start), 1),
                            else_=0,
                        )
                    ),
                    0,
                ),
            )
            c, p = (await self._s.execute(q)).one()
            current += c
            prior += p
        return current, prior

    async def related_keywords(self, keyword: str, limit: int = 5) -> list[str]:
        """Other keywords whose matches share external ids with *keyword*."""
        overlap: dict[str, int] = {}
        for kind in ItemKind:
            model = _model(kind)
            other = aliased(model)
            q = (
                select(other.keyword, func.count(other.id))
                .join(model, and_(model.external_id == other.external_id, model.keyword != other.keyword))
                .where(model.keyword == keyword, model.is_active.is_(True), other.is_active.is_(True))
                .group_by(other.keyword)
            )
            for name, n in (await self._s.execute(q)).all():
                overlap[name] = overlap.get(name, 0) + n
        return [k for k, _ in sorted(overlap.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]]


# ── KeywordRepository ────────────────────────────────────────────────


class KeywordRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._s = session

    async def get(self, keyword: str) -> DBKeyword | None:
        # claim() updates rows behind the identity map
        return await self._s.scalar(
            select(DBKeyword)
            .where(DBKeyword.keyword == keyword)
            .execution_options(populate_existing=True)
        )

    async def require(self, keyword: str) -> DBKeyword:
        record = await self.get(keyword)
        if record is None or not record.is_active:
            raise KeywordNotFoundError(keyword)
        return record

    async def get_or_create(self, keyword: str) -> DBKeyword:
        now = utcnow()
        await self._s.execute(
            sqlite_upsert(DBKeyword)
            .values(
                keyword=keyword,
                fetch_status=FetchStatus.PENDING.value,
                fetch_interval=24,
                auto_fetch=True,
                is_active=True,
                related_keywords=[],
                top_channels=[],
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["keyword"])
        )
        record = await self.get(keyword)
        if record is None:
            raise KeywordNotFoundError(keyword)
        return record

    async def register(
        self,
        keyword: str,
        *,
        fetch_interval: int = 24,
        auto_fetch: bool = True,
        channels: list[str] | None = None,
    ) -> DBKeyword:
        """Add a keyword to scheduling, or update and reactivate an existing one."""
        fetch_interval = validate_interval(fetch_interval)
        now = utcnow()
        record = await self.get(keyword)
        if record is None:
            record = DBKeyword(
                keyword=keyword,
                fetch_status=FetchStatus.PENDING.value,
                fetch_interval=fetch_interval,
                auto_fetch=auto_fetch,
                channels=channels or None,
                is_active=True,
                related_keywords=[],
                top_channels=[],
                next_scheduled_fetch=None,
                created_at=now,
                updated_at=now,
            )
            self._s.add(record)
            await self._s.flush()
            return record

        record.fetch_interval = fetch_interval
        record.auto_fetch = auto_fetch
        record.is_active = True
        if channels is not None:
            record.channels = channels or None
        record.next_scheduled_fetch = now + timedelta(hours=fetch_interval) if auto_fetch else None
        record.updated_at = now
        await self._s.flush()
        return record

    async def deactivate(self, keyword: str) -> bool:
        result = await self._s.execute(
            update(DBKeyword)
            .where(DBKeyword.keyword == keyword, DBKeyword.is_active.is_(True))
            .values(is_active=False, auto_fetch=False, next_scheduled_fetch=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def update_interval(self, keyword: str, hours: int) -> DBKeyword:
        hours = validate_interval(hours)
        record = await self.require(keyword)
        now = utcnow()
        record.fetch_interval = hours
        record.next_scheduled_fetch = now + timedelta(hours=hours) if record.auto_fetch else None
        record.updated_at = now
        await self._s.flush()
        return record

    def _claimable(self, now: datetime):
        stale_cutoff = now - timedelta(minutes=settings.STALE_PROCESSING_MINUTES)
        return or_(
            DBKeyword.fetch_status != FetchStatus.PROCESSING.value,
            DBKeyword.last_fetched.is_(None),
            DBKeyword.last_fetched < stale_cutoff,
        )

    async def claim(self, keyword: str, now: datetime | None = None) -> bool:
        """Atomically move *keyword* into processing; False if a cycle already holds it."""
        now = now or utcnow()
        result = await self._s.execute(
            update(DBKeyword)
            .where(DBKeyword.keyword == keyword, self._claimable(now))
            .values(fetch_status=FetchStatus.PROCESSING.value, last_fetched=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_completed(self, keyword: str, now: datetime | None = None) -> DBKeyword:
        now = now or utcnow()
        record = await self.get(keyword)
        if record is None:
            raise KeywordNotFoundError(keyword)
        started = record.last_fetched or now
        record.fetch_status = FetchStatus.COMPLETED.value
        record.search_count += 1
        record.last_searched = now
        if record.auto_fetch:
            record.next_scheduled_fetch = started + timedelta(hours=record.fetch_interval)
        record.updated_at = now
        await self._s.flush()
        return record

    async def mark_failed(self, keyword: str, now: datetime | None = None) -> DBKeyword | None:
        now = now or utcnow()
        record = await self.get(keyword)
        if record is None:
            return None
        record.fetch_status = FetchStatus.FAILED.value
        if record.auto_fetch:
            record.next_scheduled_fetch = now + timedelta(hours=settings.FAILURE_RETRY_HOURS)
        record.updated_at = now
        await self._s.flush()
        return record

    def _due_filter(self, now: datetime):
        return and_(
            DBKeyword.is_active.is_(True),
            DBKeyword.auto_fetch.is_(True),
            self._claimable(now),
            or_(DBKeyword.next_scheduled_fetch.is_(None), DBKeyword.next_scheduled_fetch <= now),
        )

    async def list_due(self, now: datetime | None = None, limit: int | None = None) -> list[DBKeyword]:
        """Keywords due for a cycle, stalest first."""
        now = now or utcnow()
        q = select(DBKeyword).where(self._due_filter(now)).order_by(
            DBKeyword.last_fetched.asc(), DBKeyword.id.asc()
        )
        if limit:
            q = q.limit(limit)
        return list((await self._s.execute(q)).scalars().all())

    async def list_scheduled(self) -> list[DBKeyword]:
        q = (
            select(DBKeyword)
            .where(DBKeyword.is_active.is_(True), DBKeyword.auto_fetch.is_(True))
            .order_by(DBKeyword.next_scheduled_fetch.asc(), DBKeyword.keyword)
        )
        return list((await self._s.execute(q)).scalars().all())

    async def list_active(self) -> list[DBKeyword]:
        q = select(DBKeyword).where(DBKeyword.is_active.is_(True)).order_by(DBKeyword.keyword)
        return list((await self._s.execute(q)).scalars().all())

    async def counts(self, now: datetime | None = None) -> dict[str, int]:
        now = now or utcnow()
        active = await self._s.scalar(
            select(func.count(DBKeyword.id)).where(DBKeyword.is_active.is_(True))
        ) or 0
        scheduled = await self._s.scalar(
            select(func.count(DBKeyword.id)).where(
                DBKeyword.is_active.is_(True), DBKeyword.auto_fetch.is_(True)
            )
        ) or 0
        due = await self._s.scalar(select(func.count(DBKeyword.id)).where(self._due_filter(now))) or 0
        processing = await self._s.scalar(
            select(func.count(DBKeyword.id)).where(
                DBKeyword.fetch_status == FetchStatus.PROCESSING.value
            )
        ) or 0
        return {"active": active, "scheduled": scheduled, "due": due, "processing": processing}

    async def update_stats(self, keyword: str, **fields: Any) -> None:
        await self._s.execute(
            update(DBKeyword)
            .where(DBKeyword.keyword == keyword)
            .values(**fields, updated_at=utcnow())
        )

    async def set_trending(self, trending: set[str]) -> None:
        await self._s.execute(
            update(DBKeyword)
            .where(DBKeyword.is_active.is_(True))
            .values(trending=DBKeyword.keyword.in_(sorted(trending)) if trending else False)
            .execution_options(synchronize_session=False)
        )

    async def trending(self, limit: int = 10) -> list[DBKeyword]:
        q = (
            select(DBKeyword)
            .where(DBKeyword.is_active.is_(True), DBKeyword.volume > 0)
            .order_by(
                DBKeyword.trending.desc(),
                DBKeyword.recent_activity.desc(),
                DBKeyword.volume.desc(),
                DBKeyword.growth.desc(),
            )
            .limit(limit)
        )
        return list((await self._s.execute(q)).scalars().all())


# ── RunLogRepository ─────────────────────────────────────────────────


class RunLogRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._s = session

    async def log_run(
        self,
        *,
        keyword: str,
        trigger: str,
        status: str,
        items_fetched: int,
        items_stored: int,
        items_new: int,
        error_message: str,
        duration_seconds: float,
        started_at: datetime,
    ) -> None:
        run = DBFetchRun(
            keyword=keyword,
            trigger=trigger,
            status=status,
            items_fetched=items_fetched,
            items_stored=items_stored,
            items_new=items_new,
            error_message=error_message,
            duration_seconds=round(duration_seconds, 2),
            started_at=started_at,
            finished_at=utcnow(),
        )
        self._s.add(run)

    async def recent_runs(self, limit: int = 20, keyword: str | None = None) -> list[DBFetchRun]:
        q = select(DBFetchRun).order_by(DBFetchRun.started_at.desc(), DBFetchRun.id.desc())
        if keyword:
            q = q.where(DBFetchRun.keyword == keyword)
        result = await self._s.execute(q.limit(limit))
        return list(result.scalars().all())

    async def keyword_stats(self) -> list[dict]:
        """Per keyword: total runs, success rate, last run, items stored."""
        q = select(
            DBFetchRun.keyword,
            func.count(DBFetchRun.id).label("total_runs"),
            func.sum(func.cast(DBFetchRun.status == "success", Integer)).label("success_count"),
            func.max(DBFetchRun.started_at).label("last_run"),
            func.sum(DBFetchRun.items_new).label("total_items"),
        ).group_by(DBFetchRun.keyword)
        rows = (await self._s.execute(q)).all()
        return [
            {
                "keyword": r[0],
                "total_runs": r[1],
                "success_rate": round((r[2] or 0) / max(r[1], 1) * 100, 0),
                "last_run": isoformat_utc(r[3]),
                "total_items": r[4] or 0,
            }
            for r in rows
        ]
