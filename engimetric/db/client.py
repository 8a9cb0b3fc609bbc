"""
PostgreSQL Async Database Client

Uses SQLAlchemy 2.0 with asyncpg for async database operations.

Two engines share the process: the end-user engine (RLS enforced) and the
privileged scheduler engine used for internal work with no acting user.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from engimetric.config import Settings, get_settings
from engimetric.db.rls import get_rls_context, is_rls_internal

logger = structlog.get_logger()

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None
_scheduler_engine: AsyncEngine | None = None
_scheduler_session_factory: async_sessionmaker[AsyncSession] | None = None


def _engine_kwargs(settings: Settings) -> dict[str, object]:
    engine_kwargs: dict[str, object] = {
        "echo": settings.log_level == "DEBUG",
    }
    if settings.db_pool_mode == "null":
        engine_kwargs["poolclass"] = NullPool
    else:
        engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
        engine_kwargs["max_overflow"] = max(0, int(settings.db_pool_max_overflow))
        engine_kwargs["pool_timeout"] = max(1, int(settings.db_pool_timeout_seconds))
        engine_kwargs["pool_recycle"] = max(60, int(settings.db_pool_recycle_seconds))
        engine_kwargs["pool_pre_ping"] = True
    return engine_kwargs


def _make_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db() -> None:
    """Initialize the database connection pools."""
    global _engine, _session_factory, _scheduler_engine, _scheduler_session_factory

    settings = get_settings()
    database_url = str(settings.database_url)

    _engine = create_async_engine(database_url, **_engine_kwargs(settings))
    _session_factory = _make_factory(_engine)

    if settings.scheduler_database_url:
        _scheduler_engine = create_async_engine(
            str(settings.scheduler_database_url),
            **_engine_kwargs(settings),
        )
        _scheduler_session_factory = _make_factory(_scheduler_engine)
    else:
        _scheduler_engine = None
        _scheduler_session_factory = None

    logger.info(
        "Database connection pool initialized",
        url=database_url[:50] + "...",
        pool_mode=settings.db_pool_mode,
        privileged_pool=_scheduler_engine is not None,
    )


async def close_db() -> None:
    """Close the database connection pools."""
    global _engine, _session_factory, _scheduler_engine, _scheduler_session_factory

    if _scheduler_engine:
        await _scheduler_engine.dispose()
        _scheduler_engine = None
        _scheduler_session_factory = None

    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connection pool closed")


def get_async_engine() -> AsyncEngine:
    """Get the end-user async engine instance."""
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _engine


def _select_factory(user_id: int | None, is_internal: bool) -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    if is_internal and user_id is None and _scheduler_session_factory is not None:
        return _scheduler_session_factory
    return _session_factory


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Get an async database session bound to the current RLS context.

    Usage:
        with rls_context(user_id):
            async with get_db_session() as session:
                result = await session.execute(...)

    Commits on success, rolls back on any error and always releases the connection.
    """
    user_id = get_rls_context()
    is_internal = is_rls_internal()
    session = _select_factory(user_id, is_internal)()
    try:
        if user_id is not None:
            await session.execute(
                text("SELECT set_config('app.current_user_id', :user_id, true)"),
                {"user_id": str(user_id)},
            )
        if is_internal:
            await session.execute(
                text("SELECT set_config('app.is_internal', 'true', true)")
            )
        yield session
        await session.commit()
    except BaseException:
        await session.rollback()
        raise
    finally:
        await session.close()
