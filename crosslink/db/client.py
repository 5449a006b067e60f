"""
PostgreSQL Async Database Client

SQLAlchemy 2.0 over asyncpg. One session is one transaction: it commits when
the block exits cleanly and rolls back on any exception.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from crosslink.config import Settings, get_settings

logger = structlog.get_logger()

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _engine_kwargs(settings: Settings) -> dict[str, Any]:
    kwargs: dict[str, Any] = {"echo": settings.log_level == "DEBUG"}
    if settings.db_pool_mode == "null":
        # Short-lived processes (migrations, one-off jobs) should not hold idle connections.
        kwargs["poolclass"] = NullPool
        return kwargs

    kwargs.update(
        pool_size=max(1, int(settings.db_pool_size)),
        max_overflow=max(0, int(settings.db_pool_max_overflow)),
        pool_timeout=max(1, int(settings.db_pool_timeout_seconds)),
        pool_recycle=max(60, int(settings.db_pool_recycle_seconds)),
        pool_pre_ping=True,
    )
    return kwargs


async def init_db() -> None:
    """Create the engine and session factory."""
    global _engine, _session_factory

    settings = get_settings()
    database_url = str(settings.database_url)

    _engine = create_async_engine(database_url, **_engine_kwargs(settings))
    _session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    logger.info(
        "Database connection pool initialized",
        url=database_url.split("@")[-1],
        pool_mode=settings.db_pool_mode,
    )


async def close_db() -> None:
    global _engine, _session_factory

    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connection pool closed")


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Open one transaction.

    A lock timeout is set for the transaction so a merge stuck behind another
    writer's row locks fails fast instead of piling up connections.

    Usage:
        async with get_db_session() as session:
            result = await session.execute(...)
    """
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    lock_timeout_ms = get_settings().db_lock_timeout_ms
    session = _session_factory()
    try:
        if lock_timeout_ms:
            await session.execute(
                text("SELECT set_config('lock_timeout', :timeout, true)"),
                {"timeout": f"{int(lock_timeout_ms)}ms"},
            )
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def ping_db() -> bool:
    """Readiness check."""
    async with get_db_session() as session:
        await session.execute(text("SELECT 1"))
    return True
