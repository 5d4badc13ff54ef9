"""
Database Session Management

The async engine is created on first use so the application can run
without a database (DATABASE_URL unset selects the in-process store).

Lifecycle:
----------
Application Start -> init_db() -> engine + pool ready
Search -> SQLDocumentStore -> one session per query
Application Shutdown -> close_db() -> engine disposed
"""

import logging
from typing import Any, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool

from docrag.core.config import settings

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def get_engine_config() -> dict[str, Any]:
    """Engine options per environment: pooled for dev/prod, NullPool otherwise."""
    config: dict[str, Any] = {
        "echo": settings.DB_ECHO,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
    }

    if settings.is_development or settings.is_production:
        config.update({
            "poolclass": AsyncAdaptedQueuePool,
            "pool_size": settings.DB_POOL_SIZE,
            "max_overflow": settings.DB_MAX_OVERFLOW,
            "pool_timeout": 30,
        })
        if settings.is_production:
            config["pool_recycle"] = 7200
    else:
        config["poolclass"] = NullPool

    return config


def get_engine() -> AsyncEngine:
    """
    Get or create the async engine.

    Raises:
        RuntimeError: DATABASE_URL is not configured
    """
    global _engine, _session_factory

    if _engine is None:
        if not settings.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is not configured")

        engine_config = get_engine_config()
        _engine = create_async_engine(settings.DATABASE_URL, **engine_config)
        _session_factory = async_sessionmaker(
            bind=_engine,
            class_=AsyncSession,
            autoflush=False,
            expire_on_commit=False,
        )
        logger.info(f"Database engine created (pool_size={engine_config.get('pool_size', 'NullPool')})")

    return _engine


def get_session_factory() -> async_sessionmaker:
    get_engine()
    return _session_factory


async def init_db() -> None:
    """Verify connectivity; in development also create the pgvector extension and tables."""
    logger.info("Initializing database")

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))

        if settings.is_development:
            from docrag.db.base import Base
            import docrag.models  # noqa: F401  (registers tables)

            await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            await conn.run_sync(Base.metadata.create_all)
            logger.info("Database tables created")

    logger.info("Database connection successful")


async def close_db() -> None:
    """Dispose of the engine. Errors are logged, not raised, during shutdown."""
    global _engine, _session_factory

    if _engine is None:
        return

    try:
        await _engine.dispose()
        logger.info("Database connections closed")
    except Exception as e:
        logger.error(f"Database closure failed: {e}")
    finally:
        _engine = None
        _session_factory = None


async def check_db_health() -> bool:
    """True when a trivial query succeeds."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False
