"""Async engine and sessions for the snapshot store."""

from collections.abc import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from salonbilling.core.config import Settings, get_settings
from salonbilling.core.logging import get_logger

logger = get_logger(__name__)


def build_engine(settings: Settings) -> AsyncEngine:
    options: dict = {"echo": settings.debug}
    # SQLite drivers reject pool sizing arguments.
    if not settings.database_url.startswith("sqlite"):
        options.update(
            pool_pre_ping=True,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
        )
    return create_async_engine(settings.database_url, **options)


engine: AsyncEngine = build_engine(get_settings())

# Snapshots are read back after commit to build responses.
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield one session per request, rolled back if the request fails.

    Lifecycle operations commit explicitly; the trailing commit only
    flushes work done outside them.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def check_database_connection() -> bool:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("database_unreachable", error=str(exc))
        return False
    return True
