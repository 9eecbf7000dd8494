"""Async SQLAlchemy session factory."""
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from core.change_feed import (
    ChangeFeed,
    discard_recorded_changes,
    publish_recorded_changes,
)
from core.config import get_settings
from models.base import Base


settings = get_settings()

engine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession] = async_session_factory,
    feed: ChangeFeed | None = None,
) -> AsyncGenerator[AsyncSession]:
    """
    Open a unit of work: commit on success, roll back on error.

    Change events recorded on the session are published only after the commit
    succeeds; on rollback they are discarded. ``feed`` defaults to the global
    change feed.
    """
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            discard_recorded_changes(session)
            await session.rollback()
            raise
        await publish_recorded_changes(session, feed)


async def get_async_session() -> AsyncGenerator[AsyncSession]:
    """
    Yield an async database session.

    Uses unit-of-work pattern: services use flush() for refreshing objects,
    commit happens once here at request end. This ensures atomic transactions
    per request - if anything fails, all changes are rolled back.
    """
    async with session_scope() as session:
        yield session


async def create_tables(bind: AsyncEngine = engine) -> None:
    """Create any missing tables (used when CREATE_TABLES is enabled)."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
