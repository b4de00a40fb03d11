"""Async database engine and session factory.

Uses SQLAlchemy 2.0+ async with asyncpg for PostgreSQL
and aiosqlite for testing.

Usage:
    from chartbot.common.database import get_task_session

    async def store(result):
        async with await get_task_session() as db:
            sink = SqlResultSink(db)
            ...
            await db.commit()

Await reset_engine() at shutdown to close pooled connections.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from chartbot.common.config import get_settings

# Create engine lazily on first use
_engine = None
_session_factory = None


def _get_engine():
    """Get or create the async engine (lazy singleton)."""
    global _engine
    if _engine is None:
        settings = get_settings()
        kwargs = {"echo": settings.environment == "development", "pool_pre_ping": True}
        # SQLite (tests) uses a static pool that rejects sizing arguments
        if not settings.database_url.startswith("sqlite"):
            kwargs["pool_size"] = settings.db_pool_size
            kwargs["max_overflow"] = settings.db_max_overflow
        _engine = create_async_engine(settings.database_url, **kwargs)
    return _engine


def _get_session_factory():
    """Get or create the session factory (lazy singleton)."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=_get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


async def get_task_session() -> AsyncSession:
    """Create a new session for a backtest run or a one-off storage job.

    Caller is responsible for closing the session:
        async with await get_task_session() as db:
            ...
    """
    factory = _get_session_factory()
    return factory()


async def reset_engine() -> None:
    """Dispose the engine's connection pool and drop the cached factory.

    The next session call builds a fresh engine from current settings.
    """
    global _engine, _session_factory
    engine, _engine, _session_factory = _engine, None, None
    if engine is not None:
        await engine.dispose()
