"""Shared fixtures for service tests: bookmark factory and in-memory persistence."""
import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from uuid import UUID

import pytest
from uuid6 import uuid7

from schemas.bookmark import BookmarkCreate, BookmarkRecord
from services.exceptions import PersistenceError

BASE_TIME = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)
USER_ID = UUID("00000000-0000-7000-8000-000000000001")
OTHER_USER_ID = UUID("00000000-0000-7000-8000-000000000002")

BookmarkFactory = Callable[..., BookmarkRecord]


def build_bookmark(
    minutes: int = 0,
    user_id: UUID = USER_ID,
    bookmark_id: UUID | None = None,
    url: str = "https://example.com/",
    title: str = "Example",
) -> BookmarkRecord:
    """Bookmark created ``minutes`` after BASE_TIME."""
    return BookmarkRecord(
        id=bookmark_id or uuid7(),
        url=url,
        title=title,
        created_at=BASE_TIME + timedelta(minutes=minutes),
        user_id=user_id,
    )


class FakeBookmarkStore:
    """
    In-memory persistence collaborator recording every call.

    Set ``fail`` to make writes raise PersistenceError; set ``gate`` to hold
    delete calls until the event is set.
    """

    def __init__(self) -> None:
        self.rows: list[BookmarkRecord] = []
        self.insert_calls: list[tuple[UUID, BookmarkCreate]] = []
        self.delete_calls: list[tuple[UUID, UUID]] = []
        self.select_calls = 0
        self.fail = False
        self.gate: asyncio.Event | None = None

    async def insert(self, user_id: UUID, data: BookmarkCreate) -> BookmarkRecord:
        self.insert_calls.append((user_id, data))
        if self.fail:
            raise PersistenceError("Could not save bookmark. Please try again.")
        record = BookmarkRecord(
            id=uuid7(),
            url=str(data.url),
            title=data.title,
            created_at=datetime.now(UTC),
            user_id=user_id,
        )
        self.rows.append(record)
        return record

    async def delete(self, bookmark_id: UUID, user_id: UUID) -> bool:
        self.delete_calls.append((bookmark_id, user_id))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise PersistenceError("Could not delete bookmark. Please try again.")
        before = len(self.rows)
        self.rows = [r for r in self.rows if not (r.id == bookmark_id and r.user_id == user_id)]
        return len(self.rows) != before

    async def select_all(self, user_id: UUID) -> list[BookmarkRecord]:
        self.select_calls += 1
        if self.fail:
            raise PersistenceError("Could not load bookmarks. Please try again.")
        rows = [r for r in self.rows if r.user_id == user_id]
        return sorted(rows, key=lambda r: r.created_at, reverse=True)


@pytest.fixture
def make_bookmark() -> BookmarkFactory:
    """Factory for BookmarkRecord values owned by USER_ID unless told otherwise."""
    return build_bookmark


@pytest.fixture
def store() -> FakeBookmarkStore:
    """Fresh in-memory store."""
    return FakeBookmarkStore()
