"""
Database Connection Management
Async SQLAlchemy with connection pooling
Source: https://docs.sqlalchemy.org/en/20/orm/extensions/asyncio.html
Verified: 2026-10-19
"""

from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from medenroll.core.config import EnrollmentSettings, get_settings
from medenroll.db.models import Base
from medenroll.utils.logging import get_logger

logger = get_logger(__name__)


# Global engine instance, created once per process
_engine: AsyncEngine | None = None
_async_session_maker: async_sessionmaker[AsyncSession] | None = None


def create_engine(settings: EnrollmentSettings) -> AsyncEngine:
    """
    Build an async engine for ``settings.DATABASE_URL``.

    Pool parameters only apply to the default QueuePool; testing and SQLite
    use NullPool, which does not accept them.
    """
    if not settings.DATABASE_URL:
        raise ValueError("ENROLLMENT_DATABASE_URL is not configured")

    logger.info(f"Creating database engine: {settings.DATABASE_URL.split('@')[-1]}")

    if settings.is_testing or settings.DATABASE_URL.startswith("sqlite"):
        return create_async_engine(
            settings.DATABASE_URL,
            echo=settings.DEBUG,
            poolclass=NullPool,
        )
    return create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_pre_ping=True,
    )


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine(settings: Optional[EnrollmentSettings] = None) -> AsyncEngine:
    """Get or create the global async engine."""
    global _engine

    if _engine is None:
        _engine = create_engine(settings or get_settings())
        logger.info("Database engine created successfully")

    return _engine


def get_session_maker(settings: Optional[EnrollmentSettings] = None) -> async_sessionmaker[AsyncSession]:
    """Get or create the global session maker."""
    global _async_session_maker

    if _async_session_maker is None:
        _async_session_maker = create_session_maker(get_engine(settings))
        logger.info("Session maker created successfully")

    return _async_session_maker


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create all tables that do not exist yet."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")


async def close_db_connection() -> None:
    """Close database connection pool."""
    global _engine, _async_session_maker

    if _engine is not None:
        logger.info("Closing database connection pool...")
        await _engine.dispose()
        _engine = None
        _async_session_maker = None
        logger.info("Database connection pool closed")


async def check_db_connection() -> bool:
    """Check if database connection is healthy."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Database connection check failed: {e}")
        return False
