"""Root test configuration — shared fixtures for all test modules.

IMPORTANT: Environment variables are set BEFORE any chartbot imports
so that config.py can load Settings without a .env file.
"""

from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")  # In-memory SQLite
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("ALPACA_API_KEY_ID", "test-key-id")
os.environ.setdefault("ALPACA_API_SECRET_KEY", "test-secret-key")
os.environ.setdefault("ALPACA_RATE_LIMIT_PER_SECOND", "0")

# Now safe to import chartbot modules
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from chartbot.common.config import Settings, get_settings
from chartbot.common.models import Base
from chartbot.common.schemas import Bar

# ─── Clear cached settings so test env vars are used ───
get_settings.cache_clear()


# ─── Test Database ───


@pytest_asyncio.fixture
async def engine():
    """Create an in-memory async test database with all tables."""
    test_engine = create_async_engine("sqlite+aiosqlite://", echo=False)

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest_asyncio.fixture
async def db(engine):
    """Provide a fresh database session per test with automatic rollback."""
    async_session = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    async with async_session() as session:
        async with session.begin():
            yield session
            await session.rollback()


# ─── Test Settings ───


@pytest.fixture
def test_settings() -> Settings:
    """Settings loaded from the test environment."""
    return get_settings()


# ─── Bar Helpers ───

BASE_TIME = datetime(2025, 3, 3, 14, 30, tzinfo=UTC)


def make_bars(
    count: int,
    price: float = 100.0,
    spread: float = 1.0,
    start: datetime = BASE_TIME,
    step: timedelta = timedelta(hours=1),
    overrides: dict[int, dict] | None = None,
) -> list[Bar]:
    """Build `count` flat bars, optionally overriding fields at given indexes.

    Every bar defaults to open=close=price, high=price+spread, low=price-spread.
    """
    overrides = overrides or {}
    bars = []
    for i in range(count):
        fields = {
            "timestamp": start + step * i,
            "open": price,
            "high": price + spread,
            "low": price - spread,
            "close": price,
            "volume": 1_000.0,
        }
        fields.update(overrides.get(i, {}))
        bars.append(Bar(**fields))
    return bars


@pytest.fixture
def sample_bar() -> Bar:
    """A single flat bar around 100."""
    return make_bars(1)[0]
