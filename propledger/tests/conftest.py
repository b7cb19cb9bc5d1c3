from __future__ import annotations

import os
from typing import AsyncIterator, Iterator

import pytest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from propledger.core.config import Settings, get_settings
from propledger.domain.models import Base
from propledger.persistence.db import build_engine, build_sessionmaker
from propledger.persistence.ddl import (
    NORMALIZE_DESCRIPTION_SQL,
    NORMALIZE_TRIGGER_FUNCTION_SQL,
    NORMALIZE_TRIGGER_SQL,
)


@pytest.fixture(autouse=True)
def clear_settings_cache() -> Iterator[None]:
    # Settings are cached per process; tests that patch env vars need a fresh read.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    # Short intervals keep dispatcher tests fast.
    return Settings(
        job_poll_interval_push_s=0.2,
        job_poll_interval_fallback_s=0.05,
        job_listener_reconnect_delay_s=0.01,
        job_wake_channel_size=4,
    )


async def _prepare_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.execute(text(NORMALIZE_DESCRIPTION_SQL))
        await conn.execute(text(NORMALIZE_TRIGGER_FUNCTION_SQL))
        await conn.execute(text("DROP TRIGGER IF EXISTS trg_invoice_lines_normalize ON invoice_lines"))
        await conn.execute(text(NORMALIZE_TRIGGER_SQL))


@pytest.fixture
async def db_engine() -> AsyncIterator[AsyncEngine]:
    # Integration tests need a reachable Postgres; skip cleanly when there is none.
    if not os.getenv("DATABASE_URL"):
        pytest.skip("DATABASE_URL not set")
    engine = build_engine(get_settings())
    try:
        await _prepare_schema(engine)
    except (OSError, SQLAlchemyError) as exc:
        await engine.dispose()
        pytest.skip(f"database unavailable: {exc}")
    yield engine
    # Dispose so pooled asyncpg connections never outlive the test's event loop.
    await engine.dispose()


@pytest.fixture
def db_sessionmaker(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_sessionmaker(db_engine)
