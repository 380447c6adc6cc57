from __future__ import annotations

from fastapi import HTTPException, Request

from data.database import SessionFactory, get_session
from pipeline.ingestion import IngestionService
from pipeline.scheduler import KeywordScheduler
from pipeline.trends import TrendAggregator

# Services are attached to app.state by main.py at startup


def _service(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(503, f"{name.capitalize()} not initialized")
    return service


def session_factory(request: Request) -> SessionFactory:
    return getattr(request.app.state, "session_factory", None) or get_session


def ingestion(request: Request) -> IngestionService:
    return _service(request, "ingestion")


def scheduler(request: Request) -> KeywordScheduler:
    return _service(request, "scheduler")


def aggregator(request: Request) -> TrendAggregator:
    return _service(request, "aggregator")
