"""Async SQLAlchemy engine and session factory.

Provides:
- Base: Declarative base for all sync tables
- get_engine(): Lazy engine singleton built from DATABASE_URL
- get_session_factory(): async_sessionmaker bound to the engine
- init_db() / close_db(): lifespan hooks
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from src.cms_bridge.config import get_settings

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(settings.DATABASE_URL)
    return _engine


def build_engine(url: str) -> AsyncEngine:
    """Create an engine, sizing the pool only for server databases."""
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False)
    return create_async_engine(
        url,
        pool_size=20,
        max_overflow=10,
        pool_pre_ping=True,
        echo=False,
    )


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory bound to the engine singleton."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


# ── Declarative Base ────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    """Base class for sync engine models."""


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create all tables if they don't exist."""
    # Model modules register their tables on Base.metadata at import time
    from src.cms_bridge.sync import models  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
