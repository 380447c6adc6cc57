from __future__ import annotations

import math
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from api.auth import require_manager
from api.deps import aggregator as get_aggregator
from api.deps import ingestion as get_ingestion
from api.deps import session_factory
from config.settings import settings
from core.models import CycleOptions, ItemKind
from data.database import SessionFactory, isoformat_utc
from data.repositories import ItemRepository
from pipeline.ingestion import IngestionService
from pipeline.trends import TrendAggregator

router = APIRouter(prefix="/api/feed", tags=["feed"])


class FetchRequest(BaseModel):
    keyword: str
    channels: list[str] | None = None
    max_posts: int = Field(default_factory=lambda: settings.FETCH_DEFAULT_MAX_POSTS)
    include_comments: bool = True
    max_comments_per_post: int = Field(default_factory=lambda: settings.FETCH_DEFAULT_MAX_COMMENTS)
    force_refresh: bool = False


def _item_to_dict(kind: ItemKind, it) -> dict[str, Any]:
    data = {
        "id": it.id,
        "type": kind.value,
        "external_id": it.external_id,
        "keyword": it.keyword,
        "author": it.author,
        "channel": it.channel,
        "content": it.content,
        "permalink": it.permalink,
        "origin_score": it.origin_score,
        "sentiment": it.sentiment,
        "weighted_score": it.weighted_score,
        "analysis": it.analysis,
        "processing_state": it.processing_state,
        "published_at": isoformat_utc(it.published_at),
    }
    if kind is ItemKind.POST:
        data.update(title=it.title, link=it.link)
    else:
        data.update(parent_id=it.parent_id)
    return data


@router.post("/fetch", dependencies=[Depends(require_manager)])
async def fetch_keyword(req: FetchRequest, ingestion: IngestionService = Depends(get_ingestion)):
    result = await ingestion.run_cycle(
        CycleOptions(
            keyword=req.keyword,
            channels=req.channels,
            max_posts=req.max_posts,
            include_comments=req.include_comments,
            max_comments_per_post=req.max_comments_per_post,
            force_refresh=req.force_refresh,
        )
    )
    return result.to_dict()


@router.get("/data")
async def feed_data(
    keyword: str | None = None,
    type: str = Query("both", pattern="^(posts|comments|both)$"),
    sentiment: str | None = Query(None, pattern="^(positive|negative|neutral)$"),
    channel: str | None = None,
    sort_by: str = Query(
        "weighted_score", pattern="^(weighted_score|published_at|origin_score|created_at)$"
    ),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    exact: bool = False,
    get_session: SessionFactory = Depends(session_factory),
):
    async with get_session() as session:
        repo = ItemRepository(session)
        result = await repo.list_items(
            keyword=keyword,
            item_type=type,
            exact=exact,
            sentiment=sentiment,
            channel=channel,
            sort_by=sort_by,
            sort_order=sort_order,
            page=page,
            limit=limit,
        )
        return {
            "items": [_item_to_dict(kind, it) for kind, it in result.items],
            "pagination": {
                "page": result.page,
                "limit": result.limit,
                "total": result.total,
                "pages": math.ceil(result.total / result.limit) if result.total else 0,
                "has_next": result.has_next,
                "has_prev": result.has_prev,
            },
        }


@router.get("/trending")
async def trending_keywords(
    limit: int = Query(10, ge=1, le=50),
    aggregator: TrendAggregator = Depends(get_aggregator),
):
    keywords = await aggregator.trending(limit)
    return {"trending": keywords, "total": len(keywords)}


@router.get("/statistics")
async def keyword_statistics(
    keyword: str = Query(..., min_length=1),
    aggregator: TrendAggregator = Depends(get_aggregator),
):
    return await aggregator.statistics(keyword)
