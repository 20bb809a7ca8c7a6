"""Async SQLAlchemy engine and session plumbing for the local deal cache.

Provides:
- Base: Declarative base for the four cache relations
- get_engine(): Lazily created engine singleton (one pool per process)
- session_factory_for(): Builds the session_factory callable repositories take
- get_session(): Default session factory bound to the singleton engine
- SQLite connect hook enabling foreign keys so deal deletes cascade
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.fulfillment.config import get_settings

SessionFactory = Callable[[], AsyncGenerator[AsyncSession, None]]

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def _enable_sqlite_foreign_keys(engine: AsyncEngine) -> None:
    """SQLite ignores ON DELETE CASCADE unless the pragma is set per connection."""
    if engine.dialect.name != "sqlite":
        return

    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_conn: Any, connection_record: Any) -> None:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def build_engine(url: str, **kwargs: Any) -> AsyncEngine:
    """Create an async engine with the cache's connection hooks installed."""
    engine = create_async_engine(url, echo=False, **kwargs)
    _enable_sqlite_foreign_keys(engine)
    return engine


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(settings.DATABASE_URL)
    return _engine


# ── Declarative Base ───────────────────────────────────────────────────────


class Base(DeclarativeBase):
    """Base class for the users, deals, products and deal_products tables."""


# ── Session Factories ───────────────────────────────────────────────────────


def session_factory_for(engine: AsyncEngine) -> SessionFactory:
    """Return a session_factory callable yielding sessions bound to ``engine``."""

    async def _session() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return _session


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the process-wide engine."""
    async with AsyncSession(get_engine(), expire_on_commit=False) as session:
        yield session


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create the cache tables if they don't exist."""
    # Register the models on Base.metadata before create_all
    from src.fulfillment.deals import models  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
