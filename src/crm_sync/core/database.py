"""Async SQLAlchemy engine and session factory.

Provides:
- Base: Declarative base for the CRM tables
- get_engine(): Lazily created engine singleton
- get_session(): Async generator yielding an AsyncSession (session_factory)
- init_db() / close_db(): Startup and shutdown hooks
- check_db_connection(): Readiness probe
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.crm_sync.config import get_settings

logger = structlog.get_logger(__name__)

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=10,
            max_overflow=5,
            pool_pre_ping=True,
            echo=False,
        )
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    """Base class for CRM models (companies, contacts, opportunities, links, jobs)."""


# ── Session Factory ─────────────────────────────────────────────────────────


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the engine."""
    engine = get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


# ── Database Lifecycle ──────────────────────────────────────────────────────


async def init_db() -> None:
    """Create tables that do not exist yet (Alembic remains the source of truth)."""
    # Register models on Base.metadata
    import src.crm_sync.sync.models  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database.initialized")


async def check_db_connection() -> bool:
    """Return True when a trivial query succeeds."""
    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as exc:
        logger.warning("database.unreachable", error=str(exc))
        return False


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
