"""
Database connection management.

One engine and one session factory per process. Queues receive the
factory explicitly, so tests and embedding applications can bring their own.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from leasequeue.config import get_settings

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """
    Get or create the process-wide engine from settings.

    SQLite URLs get SQLAlchemy's default pool; pool sizing only applies to
    server databases.
    """
    global _engine
    if _engine is None:
        settings = get_settings()
        url = make_url(settings.database_url)
        pool_options: dict[str, Any] = {}
        if url.get_backend_name() != "sqlite":
            pool_options = {
                "pool_size": settings.database_pool_size,
                "max_overflow": settings.database_max_overflow,
                "pool_pre_ping": True,
            }
        _engine = create_async_engine(url, **pool_options)
        logger.info(
            "Database engine created",
            extra={"backend": url.get_backend_name(), "database": url.database},
        )
    return _engine


def get_test_engine(database_url: str) -> AsyncEngine:
    """Create an unpooled engine, so every test connection is fresh."""
    return create_async_engine(database_url, poolclass=NullPool)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Build a session factory suitable for JobQueue.

    Objects stay usable after commit so leased jobs can be handed to callers.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db() -> async_sessionmaker[AsyncSession]:
    """Create the engine and return a session factory bound to it."""
    return create_session_factory(get_engine())


async def close_db() -> None:
    """Dispose of the process-wide engine, if one was created."""
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        logger.info("Database connection closed")


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """
    Open a session that is one transaction.

    Commits on clean exit, rolls back and re-raises on error.
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
