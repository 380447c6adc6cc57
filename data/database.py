from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from config.settings import settings
from data.schema import Base

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite DateTime columns do not keep tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def make_engine(url: str | None = None) -> AsyncEngine:
    return create_async_engine(url or settings.DATABASE_URL, echo=False)


def make_session_factory(engine: AsyncEngine) -> SessionFactory:
    """Return a ``get_session``-style context manager factory bound to *engine*."""
    maker = async_sessionmaker(engine, expire_on_commit=False)

    @asynccontextmanager
    async def session_scope() -> AsyncGenerator[AsyncSession]:
        async with maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return session_scope


engine = make_engine()
get_session = make_session_factory(engine)


async def init_db(target: AsyncEngine | None = None) -> None:
    """Create all tables (idempotent)."""
    async with (target or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        # WAL lets the API read while a cycle writes
        await conn.execute(text("PRAGMA journal_mode=WAL"))


def isoformat_utc(value: datetime | None) -> str | None:
    """Render a stored naive UTC timestamp with an explicit offset."""
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat()
