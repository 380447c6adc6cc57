from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from core.errors import KeywordValidationError

MAX_KEYWORD_LENGTH = 100

_WS_RE = re.compile(r"\s+")


class ItemKind(str, Enum):
    POST = "post"
    COMMENT = "comment"


class FetchStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessingState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def normalize_keyword(keyword: str | None) -> str:
    """Lowercase, trim and collapse whitespace; reject empty or oversized terms."""
    if not isinstance(keyword, str):
        raise KeywordValidationError("Keyword is required and must be a string")
    normalized = _WS_RE.sub(" ", keyword).strip().lower()
    if not normalized:
        raise KeywordValidationError("Keyword is required and must be a non-empty string")
    if len(normalized) > MAX_KEYWORD_LENGTH:
        raise KeywordValidationError(
            f"Keyword cannot exceed {MAX_KEYWORD_LENGTH} characters"
        )
    return normalized


@dataclass
class FeedPost:
    """A post normalised from a channel search feed."""

    external_id: str
    title: str
    content: str
    author: str
    channel: str
    link: str
    permalink: str
    published_at: datetime
    origin_score: int | None = None


@dataclass
class FeedComment:
    """A top-level reply to a FeedPost."""

    external_id: str
    parent_id: str
    content: str
    author: str
    channel: str
    permalink: str
    published_at: datetime
    origin_score: int | None = None


@dataclass
class FetchResult:
    """Outcome of fetching one keyword across its channels."""

    keyword: str
    channels: list[str]
    posts: list[FeedPost]
    comments: list[FeedComment]
    errors: list[str]
    failed_channels: list[str]
    duration_seconds: float

    @property
    def all_channels_failed(self) -> bool:
        return bool(self.channels) and len(self.failed_channels) == len(self.channels)


@dataclass
class CycleOptions:
    keyword: str
    channels: list[str] | None = None
    max_posts: int = 20
    include_comments: bool = True
    max_comments_per_post: int = 10
    force_refresh: bool = False


@dataclass
class CycleResult:
    """Outcome of one fetch -> classify -> score -> store pass."""

    keyword: str
    success: bool = False
    total_posts: int = 0
    total_comments: int = 0
    total_stored: int = 0
    total_new: int = 0
    processing_time: float = 0.0
    statistics: dict[str, Any] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    skipped_channels: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "keyword": self.keyword,
            "success": self.success,
            "total_posts": self.total_posts,
            "total_comments": self.total_comments,
            "total_stored": self.total_stored,
            "total_new": self.total_new,
            "processing_time": round(self.processing_time, 2),
            "statistics": self.statistics,
            "errors": self.errors,
            "skipped_channels": self.skipped_channels,
        }
