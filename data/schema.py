from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class _FeedItemColumns:
    """Columns shared by both feed item variants."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(String(64), index=True)
    keyword: Mapped[str] = mapped_column(String(100), index=True)
    author: Mapped[str] = mapped_column(String(256), default="")
    channel: Mapped[str] = mapped_column(String(100), index=True)
    content: Mapped[str] = mapped_column(Text, default="")
    permalink: Mapped[str] = mapped_column(Text, default="")
    origin_score: Mapped[int | None] = mapped_column(Integer, nullable=True)

    analysis: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    sentiment: Mapped[str | None] = mapped_column(String(10), nullable=True, index=True)
    weighted_score: Mapped[int] = mapped_column(Integer, default=50, index=True)

    processing_state: Mapped[str] = mapped_column(String(12), default="pending")
    processing_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_processed: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    published_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(DateTime)


class DBFeedPost(_FeedItemColumns, Base):
    __tablename__ = "feed_posts"

    title: Mapped[str] = mapped_column(Text, default="")
    link: Mapped[str] = mapped_column(Text, default="")

    __table_args__ = (
        Index("ix_feed_posts_external_keyword", "external_id", "keyword", unique=True),
        Index("ix_feed_posts_keyword_channel", "keyword", "channel"),
    )


class DBFeedComment(_FeedItemColumns, Base):
    __tablename__ = "feed_comments"

    parent_id: Mapped[str] = mapped_column(String(64), index=True)

    __table_args__ = (
        Index("ix_feed_comments_external_keyword", "external_id", "keyword", unique=True),
        Index("ix_feed_comments_keyword_channel", "keyword", "channel"),
    )


class DBKeyword(Base):
    __tablename__ = "keywords"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    keyword: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    search_count: Mapped[int] = mapped_column(Integer, default=0)
    last_searched: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    trending: Mapped[bool] = mapped_column(Boolean, default=False, index=True)

    sentiment_positive: Mapped[int] = mapped_column(Integer, default=0)
    sentiment_negative: Mapped[int] = mapped_column(Integer, default=0)
    sentiment_neutral: Mapped[int] = mapped_column(Integer, default=0)
    sentiment_total: Mapped[int] = mapped_column(Integer, default=0)

    volume: Mapped[int] = mapped_column(Integer, default=0, index=True)
    growth: Mapped[float] = mapped_column(Float, default=0.0)
    recent_activity: Mapped[int] = mapped_column(Integer, default=0)
    related_keywords: Mapped[list[str]] = mapped_column(JSON, default=list)
    top_channels: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    channels: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)

    last_fetched: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    next_scheduled_fetch: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True, index=True
    )
    fetch_status: Mapped[str] = mapped_column(String(12), default="pending", index=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    auto_fetch: Mapped[bool] = mapped_column(Boolean, default=True)
    fetch_interval: Mapped[int] = mapped_column(Integer, default=24)

    created_at: Mapped[datetime] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(DateTime)


class DBFetchRun(Base):
    __tablename__ = "fetch_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    keyword: Mapped[str] = mapped_column(String(100), index=True)
    trigger: Mapped[str] = mapped_column(String(12), default="manual")
    status: Mapped[str] = mapped_column(String(12))
    items_fetched: Mapped[int] = mapped_column(Integer, default=0)
    items_stored: Mapped[int] = mapped_column(Integer, default=0)
    items_new: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str] = mapped_column(Text, default="")
    duration_seconds: Mapped[float] = mapped_column(Float, default=0.0)
    started_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
