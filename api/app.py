from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from api.routers import feed, runs, scheduler_control
from core.errors import PipelineError
from core.models import normalize_keyword
from data.database import isoformat_utc, utcnow

log = logging.getLogger(__name__)


def _concerns(data: dict[str, Any], keyword: str) -> bool:
    # cycle events name one keyword, sweep events map every keyword they ran
    return data.get("keyword") == keyword or keyword in data.get("keywords", {})


class PipelineEvents:
    """Fans cycle and sweep events out to SSE listeners, optionally per keyword."""

    def __init__(self, queue_size: int = 50) -> None:
        self._queue_size = queue_size
        self._listeners: dict[asyncio.Queue, str | None] = {}
        self._ids = itertools.count(1)

    async def broadcast(self, data: dict[str, Any]) -> None:
        event = {
            "id": next(self._ids),
            "event": data.get("event", "message"),
            "emitted_at": isoformat_utc(utcnow()),
            "data": {k: v for k, v in data.items() if k != "event"},
        }
        for q, keyword in list(self._listeners.items()):
            if keyword and not _concerns(data, keyword):
                continue
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                log.debug("Dropping event %d for a slow listener", event["id"])

    def subscribe(self, keyword: str | None = None) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._listeners[q] = keyword
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._listeners.pop(q, None)


def create_app() -> FastAPI:
    app = FastAPI(title="Keyword Pulse", version="0.1.0")
    events = PipelineEvents()
    app.state.events = events

    app.include_router(scheduler_control.router)
    app.include_router(feed.router)
    app.include_router(runs.router)

    @app.exception_handler(PipelineError)
    async def pipeline_error(request: Request, exc: PipelineError):
        if exc.status_code >= 500:
            log.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})

    @app.get("/api/events")
    async def pipeline_events(request: Request, keyword: str | None = Query(None)):
        """Stream ``cycle_complete`` and ``sweep_complete`` events."""
        q = events.subscribe(normalize_keyword(keyword) if keyword else None)

        async def stream():
            try:
                while not await request.is_disconnected():
                    try:
                        event = await asyncio.wait_for(q.get(), timeout=30.0)
                    except asyncio.TimeoutError:
                        yield {"event": "ping", "data": ""}
                        continue
                    yield {
                        "id": str(event["id"]),
                        "event": event["event"],
                        "data": json.dumps({"emitted_at": event["emitted_at"], **event["data"]}),
                    }
            finally:
                events.unsubscribe(q)

        return EventSourceResponse(stream())

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app
