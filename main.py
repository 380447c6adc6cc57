"""Keyword Pulse: entry point."""

from __future__ import annotations

import logging

import uvicorn

from api.app import create_app
from config.settings import settings
from data.database import get_session, init_db
from pipeline.classifier import ClassifierAdapter
from pipeline.feed import FeedFetcher
from pipeline.ingestion import IngestionService
from pipeline.scheduler import KeywordScheduler
from pipeline.trends import TrendAggregator

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
)
log = logging.getLogger(__name__)

app = create_app()


@app.on_event("startup")
async def on_startup() -> None:
    log.info("Initialising database…")
    await init_db()

    broadcast = app.state.events.broadcast
    aggregator = TrendAggregator(get_session)
    ingestion = IngestionService(
        fetcher=FeedFetcher(),
        classifier=ClassifierAdapter(),
        session_factory=get_session,
        aggregator=aggregator,
        broadcast_fn=broadcast,
    )
    app.state.session_factory = get_session
    app.state.aggregator = aggregator
    app.state.ingestion = ingestion
    app.state.scheduler = KeywordScheduler(ingestion, get_session, broadcast_fn=broadcast)

    if settings.SCHEDULER_AUTOSTART:
        log.info("Starting keyword scheduler…")
        app.state.scheduler.start()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    if hasattr(app.state, "scheduler"):
        app.state.scheduler.shutdown()
        log.info("Keyword scheduler stopped.")


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.API_PORT,
        reload=False,
    )
