"""Async SQLAlchemy engine and session management.

Booking transitions are conditional ``UPDATE ... WHERE status = ?`` statements
whose row counts decide the winner, so any async dialect that reports
``rowcount`` for UPDATE works: asyncpg in production, aiosqlite in tests.
"""

from collections.abc import AsyncGenerator
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from racestay.config import Settings, get_settings

logger = structlog.get_logger()

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _engine_options(url: str, settings: Settings) -> dict[str, Any]:
    if url.startswith("postgresql+asyncpg"):
        return {
            "pool_size": settings.database_pool_size,
            "max_overflow": settings.database_max_overflow,
            "pool_pre_ping": True,
            # pgbouncer in transaction mode cannot hold prepared statements
            "connect_args": {"statement_cache_size": 0},
        }
    if url.startswith("sqlite+aiosqlite"):
        # Writers serialise on the file lock; wait for it instead of failing.
        return {"connect_args": {"timeout": 30}}
    return {}


def build_engine(url: str, settings: Settings | None = None) -> AsyncEngine:
    """Create an engine with dialect-appropriate pool options."""
    settings = settings or get_settings()
    return create_async_engine(url, echo=settings.database_echo, **_engine_options(url, settings))


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Rows are serialised into change events after commit.
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(url: str) -> None:
    """Create the process-wide engine and session factory."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = build_engine(url)
    _session_factory = build_session_factory(_engine)
    logger.info("db_initialized", dialect=_engine.dialect.name)


async def close_db() -> None:
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for code outside a request (workers, sweeps)."""
    if _session_factory is None:
        msg = "Database not initialized. Call init_db() first."
        raise RuntimeError(msg)
    return _session_factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session (FastAPI dependency). Uncommitted work is rolled back."""
    async with get_session_factory()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
