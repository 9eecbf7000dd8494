"""Service layer for bookmark persistence."""
import logging
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.change_feed import ChangeEventType, ChangeFeed, build_change_event, record_change
from db.session import session_scope
from models.bookmark import Bookmark
from schemas.bookmark import BookmarkCreate, BookmarkRecord
from services.exceptions import PersistenceError

logger = logging.getLogger(__name__)

TABLE_NAME = Bookmark.__tablename__


async def create_bookmark(
    db: AsyncSession,
    user_id: UUID,
    data: BookmarkCreate,
) -> Bookmark:
    """
    Create a new bookmark for a user.

    Records an INSERT change event carrying the full row; it is published to the
    owner's change feed once the surrounding transaction commits.

    Note: Does not commit. Caller (session generator) handles commit at request end.
    """
    bookmark = Bookmark(
        user_id=user_id,
        url=str(data.url),
        title=data.title,
    )
    db.add(bookmark)
    await db.flush()
    await db.refresh(bookmark)

    record = BookmarkRecord.model_validate(bookmark)
    record_change(
        db,
        user_id,
        build_change_event(TABLE_NAME, ChangeEventType.INSERT, new=record.model_dump(mode="json")),
    )
    return bookmark


async def get_bookmark(
    db: AsyncSession,
    user_id: UUID,
    bookmark_id: UUID,
) -> Bookmark | None:
    """Get a bookmark by ID, scoped to user. Returns None if not found or wrong user."""
    result = await db.execute(
        select(Bookmark).where(
            Bookmark.id == bookmark_id,
            Bookmark.user_id == user_id,
        ),
    )
    return result.scalar_one_or_none()


async def list_bookmarks(
    db: AsyncSession,
    user_id: UUID,
    offset: int = 0,
    limit: int | None = None,
) -> list[Bookmark]:
    """
    Get a user's bookmarks, newest first.

    Rows created in the same instant fall back to id order; UUIDv7 ids are
    time-ordered so this matches creation order.
    """
    query = (
        select(Bookmark)
        .where(Bookmark.user_id == user_id)
        .order_by(Bookmark.created_at.desc(), Bookmark.id.desc())
        .offset(offset)
    )
    if limit is not None:
        query = query.limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def count_bookmarks(db: AsyncSession, user_id: UUID) -> int:
    """Count a user's bookmarks."""
    result = await db.execute(
        select(func.count()).select_from(Bookmark).where(Bookmark.user_id == user_id),
    )
    return result.scalar_one()


async def delete_bookmark(
    db: AsyncSession,
    user_id: UUID,
    bookmark_id: UUID,
) -> bool:
    """
    Delete a bookmark. Returns True if deleted, False if not found or owned by someone else.

    Records a DELETE change event whose old-row payload carries only the id.

    Note: Does not commit. Caller (session generator) handles commit at request end.
    """
    bookmark = await get_bookmark(db, user_id, bookmark_id)
    if bookmark is None:
        return False

    await db.delete(bookmark)
    await db.flush()
    record_change(
        db,
        user_id,
        build_change_event(TABLE_NAME, ChangeEventType.DELETE, old={"id": str(bookmark_id)}),
    )
    return True


class SqlBookmarkStore:
    """
    Persistence collaborator used by the dashboard reconciler.

    Each call runs in its own unit of work, so change events are published as soon
    as that call commits. Database failures surface as ``PersistenceError``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        feed: ChangeFeed | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._feed = feed

    async def insert(self, user_id: UUID, data: BookmarkCreate) -> BookmarkRecord:
        """Persist a new bookmark and return it."""
        try:
            async with session_scope(self._session_factory, self._feed) as db:
                bookmark = await create_bookmark(db, user_id, data)
                record = BookmarkRecord.model_validate(bookmark)
        except SQLAlchemyError as e:
            logger.exception("Failed to insert bookmark for user %s", user_id)
            raise PersistenceError("Could not save bookmark. Please try again.") from e
        return record

    async def delete(self, bookmark_id: UUID, user_id: UUID) -> bool:
        """Delete a bookmark owned by ``user_id``. Returns False if there was nothing to delete."""
        try:
            async with session_scope(self._session_factory, self._feed) as db:
                return await delete_bookmark(db, user_id, bookmark_id)
        except SQLAlchemyError as e:
            logger.exception("Failed to delete bookmark %s for user %s", bookmark_id, user_id)
            raise PersistenceError("Could not delete bookmark. Please try again.") from e

    async def select_all(self, user_id: UUID) -> list[BookmarkRecord]:
        """Fetch a fresh newest-first snapshot of the user's bookmarks."""
        try:
            async with session_scope(self._session_factory, self._feed) as db:
                bookmarks = await list_bookmarks(db, user_id)
                return [BookmarkRecord.model_validate(b) for b in bookmarks]
        except SQLAlchemyError as e:
            logger.exception("Failed to load bookmarks for user %s", user_id)
            raise PersistenceError("Could not load bookmarks. Please try again.") from e
