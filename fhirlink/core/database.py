"""
Database connection and session management

Provides:
- Async database sessions with proper pooling (SQL repositories)
- Transaction context manager for ACID compliance
- Redis client connection shared by the rate limiter and OAuth state store
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import redis.asyncio as redis
import structlog
from fhirlink.core.config import settings
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

logger = structlog.get_logger(__name__)

Base = declarative_base()

# Convert postgresql:// to postgresql+asyncpg:// for async driver
_async_db_url = settings.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://")
async_engine = create_async_engine(
    _async_db_url,
    pool_pre_ping=True,
    pool_size=getattr(settings, "DB_POOL_SIZE", 10),
    max_overflow=getattr(settings, "DB_MAX_OVERFLOW", 20),
    pool_recycle=getattr(settings, "DB_POOL_RECYCLE", 3600),
)

AsyncSessionLocal = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
)


@asynccontextmanager
async def async_transaction(db: AsyncSession) -> AsyncGenerator[AsyncSession, None]:
    """
    Asynchronous transaction context manager with automatic commit/rollback.

    Usage:
        async with async_transaction(db) as session:
            await session.execute(...)
            # Commits automatically on success, rolls back on exception
    """
    try:
        yield db
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.error(
            "async_transaction_rolled_back",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise


# =============================================================================
# Redis
# =============================================================================


async def create_redis_client() -> Optional[redis.Redis]:
    """
    Connect to Redis (call during app startup).

    Returns:
        Connected client, or None when Redis is unreachable. Callers fall back
        to their in-process implementations and must say so.
    """
    try:
        client = redis.from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)
        await client.ping()
        logger.info("redis_connected", host=settings.REDIS_HOST, port=settings.REDIS_PORT)
        return client
    except Exception as e:
        logger.error("redis_connect_failed", host=settings.REDIS_HOST, error=str(e))
        return None


async def check_database_connection() -> bool:
    """Run a trivial query against Postgres."""
    from sqlalchemy import text

    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e))
        return False
