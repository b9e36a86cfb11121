"""Async database engine and session management.

Key exports:
- Base                  — declarative base for all ORM models
- init_database(...)    — call at startup to create the engine and session factory
- close_database()      — call at shutdown to dispose the engine
- session_scope()       — async context manager for requests and background jobs
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from mindmap_history.observability import get_logger

logger = get_logger(__name__)


class Base(DeclarativeBase):
    """Declarative base for history and canonical document tables."""


# Module-level engine and session factory, set by init_database()
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_database(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 5,
    echo: bool = False,
) -> None:
    """Initialize the database engine and session factory.

    Must be called once at application startup (in the lifespan handler)
    before any request touches storage.

    Args:
        database_url: SQLAlchemy async connection URL.
        pool_size: Connection pool size.
        max_overflow: Max overflow connections above pool_size.
        echo: Whether to echo SQL statements.
    """
    global _engine, _session_factory  # noqa: PLW0603

    logger.info("Initializing database engine", pool_size=pool_size, max_overflow=max_overflow)

    _engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        echo=echo,
        pool_pre_ping=True,
    )
    _session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def close_database() -> None:
    """Dispose the database engine. Called at application shutdown."""
    global _engine, _session_factory  # noqa: PLW0603

    if _engine is not None:
        logger.info("Disposing database engine")
        await _engine.dispose()
        _engine = None
        _session_factory = None


@asynccontextmanager
async def session_scope() -> AsyncGenerator[AsyncSession, None]:
    """Yield a session that commits on success and rolls back on error.

    Raises:
        RuntimeError: If init_database() has not been called yet.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database has not been initialized. "
            "Call init_database() in the application lifespan handler."
        )

    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
