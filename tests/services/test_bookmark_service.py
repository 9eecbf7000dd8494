"""Tests for bookmark persistence and change-event publication."""
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.change_feed import PENDING_CHANGES_KEY, ChangeFeed
from models.base import utc_now
from models.bookmark import Bookmark
from models.user import User
from schemas.bookmark import BookmarkCreate
from services.bookmark_service import (
    SqlBookmarkStore,
    count_bookmarks,
    create_bookmark,
    delete_bookmark,
    get_bookmark,
    list_bookmarks,
)
from services.exceptions import PersistenceError


def new_bookmark(title: str = "Example", url: str = "https://example.com/") -> BookmarkCreate:
    return BookmarkCreate(url=url, title=title)


@pytest.fixture
def feed() -> AsyncMock:
    mock = AsyncMock(spec=ChangeFeed)
    mock.publish.return_value = True
    return mock


async def test__create_bookmark__records_insert_event(
    db_session: AsyncSession, test_user: User,
) -> None:
    bookmark = await create_bookmark(db_session, test_user.id, new_bookmark())

    assert bookmark.id is not None
    assert bookmark.user_id == test_user.id
    assert bookmark.url == "https://example.com/"

    [(owner, event)] = db_session.info[PENDING_CHANGES_KEY]
    assert owner == test_user.id
    assert event["event_type"] == "INSERT"
    assert event["table"] == "bookmarks"
    assert event["new"]["id"] == str(bookmark.id)
    assert event["new"]["user_id"] == str(test_user.id)
    assert event["new"]["title"] == "Example"


async def test__list_bookmarks__newest_first_and_scoped(
    db_session: AsyncSession, test_user: User, other_user: User,
) -> None:
    now = utc_now()
    for minutes, title in [(1, "old"), (3, "newest"), (2, "middle")]:
        db_session.add(
            Bookmark(
                user_id=test_user.id,
                url=f"https://example.com/{title}",
                title=title,
                created_at=now + timedelta(minutes=minutes),
            ),
        )
    db_session.add(Bookmark(user_id=other_user.id, url="https://other.com/", title="theirs"))
    await db_session.flush()

    bookmarks = await list_bookmarks(db_session, test_user.id)

    assert [b.title for b in bookmarks] == ["newest", "middle", "old"]
    assert await count_bookmarks(db_session, test_user.id) == 3
    assert [b.title for b in await list_bookmarks(db_session, test_user.id, offset=1, limit=1)] == [
        "middle",
    ]


async def test__delete_bookmark__only_owner(
    db_session: AsyncSession, test_user: User, other_user: User,
) -> None:
    bookmark = await create_bookmark(db_session, test_user.id, new_bookmark())
    db_session.info.pop(PENDING_CHANGES_KEY)

    assert await delete_bookmark(db_session, other_user.id, bookmark.id) is False
    assert PENDING_CHANGES_KEY not in db_session.info
    assert await get_bookmark(db_session, test_user.id, bookmark.id) is not None

    assert await delete_bookmark(db_session, test_user.id, bookmark.id) is True
    assert await get_bookmark(db_session, test_user.id, bookmark.id) is None

    [(owner, event)] = db_session.info[PENDING_CHANGES_KEY]
    assert owner == test_user.id
    assert event["event_type"] == "DELETE"
    assert event["old"] == {"id": str(bookmark.id)}


class TestSqlBookmarkStore:
    """Unit-of-work store used by the live dashboard."""

    async def test__insert__publishes_after_commit(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        test_user: User,
        feed: AsyncMock,
    ) -> None:
        store = SqlBookmarkStore(session_factory, feed)

        record = await store.insert(test_user.id, new_bookmark())

        assert record.user_id == test_user.id
        feed.publish.assert_awaited_once()
        owner, event = feed.publish.await_args.args
        assert owner == test_user.id
        assert event["new"]["id"] == str(record.id)
        assert [b.id for b in await store.select_all(test_user.id)] == [record.id]

    async def test__delete__publishes_only_when_row_removed(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        test_user: User,
        other_user: User,
        feed: AsyncMock,
    ) -> None:
        store = SqlBookmarkStore(session_factory, feed)
        record = await store.insert(test_user.id, new_bookmark())
        feed.publish.reset_mock()

        assert await store.delete(record.id, other_user.id) is False
        feed.publish.assert_not_awaited()

        assert await store.delete(record.id, test_user.id) is True
        owner, event = feed.publish.await_args.args
        assert owner == test_user.id
        assert event["event_type"] == "DELETE"
        assert await store.select_all(test_user.id) == []

    async def test__select_all__newest_first(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        test_user: User,
        feed: AsyncMock,
    ) -> None:
        store = SqlBookmarkStore(session_factory, feed)
        first = await store.insert(test_user.id, new_bookmark("first"))
        second = await store.insert(test_user.id, new_bookmark("second"))

        snapshot = await store.select_all(test_user.id)

        assert [b.id for b in snapshot] == [second.id, first.id]
        assert all(b.created_at.tzinfo is not None for b in snapshot)

    async def test__insert__database_error_is_persistence_error(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        test_user: User,
        feed: AsyncMock,
    ) -> None:
        store = SqlBookmarkStore(session_factory, feed)
        error = OperationalError("INSERT", {}, Exception("database is locked"))

        with (
            patch("services.bookmark_service.create_bookmark", side_effect=error),
            pytest.raises(PersistenceError, match="Could not save bookmark"),
        ):
            await store.insert(test_user.id, new_bookmark())

        feed.publish.assert_not_awaited()

    async def test__rollback__discards_recorded_events(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        test_user: User,
        feed: AsyncMock,
    ) -> None:
        store = SqlBookmarkStore(session_factory, feed)
        error = OperationalError("COMMIT", {}, Exception("disk I/O error"))

        with (
            patch.object(AsyncSession, "commit", side_effect=error),
            pytest.raises(PersistenceError, match="Could not save bookmark"),
        ):
            await store.insert(test_user.id, new_bookmark())

        feed.publish.assert_not_awaited()
        assert await store.select_all(test_user.id) == []

    async def test__select_all__database_error_is_persistence_error(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        test_user: User,
    ) -> None:
        store = SqlBookmarkStore(session_factory)
        error = OperationalError("SELECT", {}, Exception("no such table"))

        with (
            patch("services.bookmark_service.list_bookmarks", side_effect=error),
            pytest.raises(PersistenceError, match="Could not load bookmarks"),
        ):
            await store.select_all(test_user.id)
