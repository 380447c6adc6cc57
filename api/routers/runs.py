from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from api.deps import session_factory
from data.database import SessionFactory, isoformat_utc
from data.repositories import RunLogRepository

router = APIRouter(prefix="/api/runs", tags=["runs"])


@router.get("/stats")
async def run_stats(get_session: SessionFactory = Depends(session_factory)):
    async with get_session() as session:
        repo = RunLogRepository(session)
        return await repo.keyword_stats()


@router.get("")
async def recent_runs(
    limit: int = Query(20, ge=1, le=100),
    keyword: str | None = None,
    get_session: SessionFactory = Depends(session_factory),
):
    async with get_session() as session:
        repo = RunLogRepository(session)
        runs = await repo.recent_runs(limit=limit, keyword=keyword.strip().lower() if keyword else None)
        return [
            {
                "id": r.id,
                "keyword": r.keyword,
                "trigger": r.trigger,
                "status": r.status,
                "items_fetched": r.items_fetched,
                "items_stored": r.items_stored,
                "items_new": r.items_new,
                "error_message": r.error_message,
                "duration_seconds": r.duration_seconds,
                "started_at": isoformat_utc(r.started_at),
                "finished_at": isoformat_utc(r.finished_at),
            }
            for r in runs
        ]
