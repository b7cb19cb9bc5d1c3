from __future__ import annotations

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from propledger.core.config import Settings


def build_engine(settings: Settings) -> AsyncEngine:
    # Bounded asyncpg pools for predictable latency; one engine per pipeline context.
    engine_kwargs: dict[str, Any] = {
        "pool_pre_ping": True,
        "pool_size": max(1, int(settings.db_pool_size)),
        "max_overflow": max(0, int(settings.db_max_overflow)),
        "pool_timeout": 30,
        "pool_recycle": 1800,
    }
    if settings.db_statement_timeout_ms > 0:
        engine_kwargs["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.db_statement_timeout_ms))}
        }
    return create_async_engine(settings.database_url, **engine_kwargs)


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


def raw_dsn(database_url: str) -> str:
    # asyncpg.connect() wants a plain postgresql:// DSN without the SQLAlchemy driver suffix.
    url = make_url(database_url).set(drivername="postgresql")
    return url.render_as_string(hide_password=False)


async def advisory_xact_lock(session: AsyncSession, key: str) -> None:
    # Held until the surrounding transaction ends; hashtext() maps the key onto the lock space.
    await session.execute(select(func.pg_advisory_xact_lock(func.hashtext(key))))
