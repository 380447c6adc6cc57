from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from api.auth import require_manager
from api.deps import scheduler as get_scheduler
from core.errors import KeywordValidationError
from pipeline.scheduler import KeywordScheduler

router = APIRouter(
    prefix="/api/scheduler",
    tags=["scheduler"],
    dependencies=[Depends(require_manager)],
)

DEFAULT_FETCH_INTERVAL = 24


class SchedulerCommand(BaseModel):
    action: Literal[
        "start", "stop", "run-now", "add-keyword", "remove-keyword", "update-interval"
    ]
    keyword: str | None = None
    fetch_interval: int | None = None
    channels: list[str] | None = None
    auto_fetch: bool = True


@router.get("/status")
async def scheduler_status(scheduler: KeywordScheduler = Depends(get_scheduler)):
    return await scheduler.status()


@router.get("/keywords")
async def scheduled_keywords(scheduler: KeywordScheduler = Depends(get_scheduler)):
    keywords = await scheduler.scheduled_keywords()
    return {"keywords": keywords, "total": len(keywords)}


@router.post("")
async def scheduler_command(
    cmd: SchedulerCommand, scheduler: KeywordScheduler = Depends(get_scheduler)
):
    if cmd.action == "start":
        started = scheduler.start()
        return {
            "success": True,
            "message": "Scheduler started" if started else "Scheduler already running",
            "status": await scheduler.status(),
        }

    if cmd.action == "stop":
        stopped = scheduler.stop()
        return {
            "success": True,
            "message": "Scheduler stopped" if stopped else "Scheduler was not running",
            "status": await scheduler.status(),
        }

    if cmd.action == "run-now":
        return {"success": True, "sweep": await scheduler.run_now()}

    if cmd.action == "add-keyword":
        record = await scheduler.add_keyword(
            cmd.keyword,
            cmd.fetch_interval if cmd.fetch_interval is not None else DEFAULT_FETCH_INTERVAL,
            cmd.channels,
            auto_fetch=cmd.auto_fetch,
        )
        return {"success": True, "keyword": record}

    if cmd.action == "remove-keyword":
        await scheduler.remove_keyword(cmd.keyword)
        return {"success": True, "message": f'Keyword "{cmd.keyword}" removed from scheduling'}

    if cmd.fetch_interval is None:
        raise KeywordValidationError("fetch_interval is required for update-interval")
    record = await scheduler.update_interval(cmd.keyword, cmd.fetch_interval)
    return {"success": True, "keyword": record}
