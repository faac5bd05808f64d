from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from hostplane.core.config import Settings, get_settings


def engine_options(settings: Settings) -> dict[str, Any]:
    """Engine keyword arguments for the configured database.

    Postgres gets a bounded pool and an optional server-side statement
    timeout so a stuck status update cannot pin a worker. SQLite keeps
    SQLAlchemy's defaults.
    """
    if settings.database_url.startswith("sqlite"):
        return {}
    options: dict[str, Any] = {
        "pool_pre_ping": True,
        "pool_size": max(1, settings.db_pool_size),
        "max_overflow": max(0, settings.db_max_overflow),
        "pool_recycle": 1800,
    }
    if settings.db_statement_timeout_ms > 0:
        options["connect_args"] = {"server_settings": {"statement_timeout": str(settings.db_statement_timeout_ms)}}
    return options


def build_engine(settings: Settings | None = None) -> AsyncEngine:
    settings = settings or get_settings()
    return create_async_engine(settings.database_url, **engine_options(settings))


engine = build_engine()
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


def pool_stats() -> dict[str, int | None]:
    # Pools without counters (SQLite) report None rather than failing the metrics endpoint.
    pool = engine.sync_engine.pool
    stats: dict[str, int | None] = {}
    for name in ("size", "checkedout", "checkedin", "overflow"):
        reader = getattr(pool, name, None)
        stats[name] = int(reader()) if callable(reader) else None
    return stats
