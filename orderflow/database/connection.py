"""
Database Connection Management

Async SQLAlchemy 2.0 engine and session factory shared by the job
workers and the API. Every pipeline attempt opens its own session from
the factory so that one job attempt maps to one transaction boundary.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool
from sqlalchemy import text

from orderflow.config import get_settings
from orderflow.database.models import Base

logger = structlog.get_logger(__name__)
settings = get_settings()

# Global engine and session factory
_engine: Optional[AsyncEngine] = None
_async_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory configuration used by workers, API and tests."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_database(url: Optional[str] = None) -> AsyncEngine:
    """
    Initialize the database engine.

    Args:
        url: Override for the configured database URL

    Returns:
        AsyncEngine: The initialized database engine
    """
    global _engine, _async_session_factory

    if _engine is not None:
        logger.warning("Database already initialized")
        return _engine

    engine_config = {
        "echo": settings.database.echo,
        "pool_pre_ping": True,
    }

    database_url = url or settings.database.async_url
    if database_url.startswith("postgresql"):
        # asyncpg manages its own connections per worker process
        engine_config["poolclass"] = NullPool

    _engine = create_async_engine(database_url, **engine_config)
    _async_session_factory = create_session_factory(_engine)

    try:
        async with _engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info(
            "Database connection established",
            host=settings.database.host,
            database=settings.database.db,
        )
    except Exception as e:
        logger.error("Failed to connect to database", error=str(e))
        raise

    return _engine


async def create_all() -> None:
    """Create all tables from the ORM metadata."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created")


async def close_database() -> None:
    """Dispose of the engine and its connections."""
    global _engine, _async_session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
        logger.info("Database connection pool closed")


def get_engine() -> AsyncEngine:
    """
    Get the database engine.

    Raises:
        RuntimeError: If database is not initialized
    """
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the session factory the pipelines open their transactions from."""
    if _async_session_factory is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _async_session_factory


@asynccontextmanager
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Get a database session.

    Context manager that provides a database session and handles
    commit/rollback/close automatically.

    Example:
        async with get_db() as db:
            result = await db.execute(query)
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception as e:
        logger.error("Database session error, rolling back", error=str(e), error_type=type(e).__name__)
        await session.rollback()
        raise
    finally:
        await session.close()


async def get_db_dependency() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for database sessions.

    Example:
        @app.get("/items")
        async def get_items(db: AsyncSession = Depends(get_db_dependency)):
            ...
    """
    async with get_db() as session:
        yield session


async def check_database_health() -> dict:
    """
    Check database health status.

    Returns:
        dict: Health status with latency information
    """
    import time

    try:
        start = time.perf_counter()
        async with get_db() as db:
            await db.execute(text("SELECT 1"))
        latency_ms = (time.perf_counter() - start) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(latency_ms, 2),
        }
    except Exception as e:
        return {
            "status": "unhealthy",
            "error": str(e),
        }
