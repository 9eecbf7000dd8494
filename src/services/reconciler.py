"""
Reconciles one user's dashboard state across snapshots, local actions and live events.

Three sources feed the bookmark list shown to a signed-in user:

1. Snapshots re-fetched from the database whenever the dashboard re-renders
   (``seed``), including right after every add/delete action.
2. The user's own add/delete actions (``request_add`` / ``request_delete``), which
   go to the persistence layer and never touch local state directly.
3. Change-feed events (``apply_insert`` / ``apply_delete``).

A snapshot can race behind a change-feed event: the action commits, the event
arrives and is applied, and only then does the re-render's snapshot query return.
To stop that stale snapshot from reverting the list, the first change-feed event
sets ``live_takeover`` and every later ``seed`` is ignored for the rest of the
session. Feed events are idempotent, so duplicate delivery and events echoing
rows already present from a snapshot are harmless.

All methods that mutate state are synchronous. Callers run on a single event
loop, so each mutation is atomic with respect to the others.
"""
import logging
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Protocol
from uuid import UUID

from schemas.bookmark import BookmarkCreate, BookmarkRecord, validate_new_bookmark
from services.exceptions import PersistenceError

logger = logging.getLogger(__name__)


class BookmarkStore(Protocol):
    """Persistence collaborator; enforces ownership on delete."""

    async def insert(self, user_id: UUID, data: BookmarkCreate) -> BookmarkRecord: ...

    async def delete(self, bookmark_id: UUID, user_id: UUID) -> bool: ...

    async def select_all(self, user_id: UUID) -> list[BookmarkRecord]: ...


@dataclass(frozen=True)
class DashboardView:
    """Immutable view of reconciler state handed to change observers."""

    bookmarks: tuple[BookmarkRecord, ...]
    pending: frozenset[UUID]


@dataclass
class ActionResult:
    """Outcome of a user action; ``errors`` maps field name to message."""

    errors: dict[str, str] = field(default_factory=dict)
    bookmark: BookmarkRecord | None = None

    @property
    def ok(self) -> bool:
        """True when the action was accepted by the persistence layer."""
        return not self.errors


class BookmarkReconciler:
    """Owns the ordered bookmark list for one signed-in user."""

    def __init__(
        self,
        user_id: UUID,
        store: BookmarkStore,
        on_change: Callable[[DashboardView], None] | None = None,
    ) -> None:
        self._user_id = user_id
        self._store = store
        self._on_change = on_change
        self._bookmarks: list[BookmarkRecord] = []
        # In-flight delete count per id; overlapping deletes of one id keep it pending
        self._pending: Counter[UUID] = Counter()
        self._live_takeover = False

    @property
    def user_id(self) -> UUID:
        return self._user_id

    @property
    def bookmarks(self) -> tuple[BookmarkRecord, ...]:
        """Current list, newest first."""
        return tuple(self._bookmarks)

    @property
    def live_takeover(self) -> bool:
        """True once the change feed has produced an event for this session."""
        return self._live_takeover

    @property
    def pending(self) -> frozenset[UUID]:
        """Ids with a delete in flight."""
        return frozenset(self._pending)

    def is_pending(self, bookmark_id: UUID) -> bool:
        return bookmark_id in self._pending

    def view(self) -> DashboardView:
        return DashboardView(bookmarks=self.bookmarks, pending=self.pending)

    def seed(self, snapshot: Iterable[BookmarkRecord]) -> bool:
        """
        Replace state with a freshly fetched snapshot, unless live events have taken over.

        Rows owned by another user are dropped and duplicate ids keep their first
        occurrence. The result is stably sorted newest first.

        Returns:
            True if the snapshot was applied, False if it was ignored.
        """
        if self._live_takeover:
            logger.debug("Ignoring snapshot for user %s after live takeover", self._user_id)
            return False

        seen: set[UUID] = set()
        bookmarks: list[BookmarkRecord] = []
        for bookmark in snapshot:
            if bookmark.user_id != self._user_id:
                logger.warning(
                    "Dropping snapshot row %s owned by another user", bookmark.id,
                )
                continue
            if bookmark.id in seen:
                continue
            seen.add(bookmark.id)
            bookmarks.append(bookmark)

        bookmarks.sort(key=lambda b: b.created_at, reverse=True)
        # sort(reverse=True) keeps equal keys in their original order
        self._bookmarks = bookmarks
        self._notify()
        return True

    def apply_insert(self, bookmark: BookmarkRecord) -> bool:
        """
        Apply a change-feed insert.

        Events for other users are ignored outright and do not count as a takeover.
        An id already in the list is left as is.

        Returns:
            True if the list changed.
        """
        if bookmark.user_id != self._user_id:
            logger.warning("Ignoring insert event for bookmark %s owned by another user", bookmark.id)
            return False

        self._live_takeover = True
        if any(b.id == bookmark.id for b in self._bookmarks):
            return False

        # After every entry that is newer or equally old: equal timestamps keep arrival order
        index = len(self._bookmarks)
        for i, existing in enumerate(self._bookmarks):
            if existing.created_at < bookmark.created_at:
                index = i
                break
        self._bookmarks.insert(index, bookmark)
        self._notify()
        return True

    def apply_delete(self, bookmark_id: UUID) -> bool:
        """
        Apply a change-feed delete. Removing an absent id is a no-op.

        Returns:
            True if the list changed.
        """
        self._live_takeover = True
        remaining = [b for b in self._bookmarks if b.id != bookmark_id]
        if len(remaining) == len(self._bookmarks):
            return False
        self._bookmarks = remaining
        self._notify()
        return True

    async def request_add(self, url: str | None, title: str | None) -> ActionResult:
        """
        Validate and persist a new bookmark.

        Nothing is inserted locally: the row shows up through the change feed or the
        next snapshot. Invalid input never reaches the persistence layer.
        """
        validated = validate_new_bookmark(url, title)
        if isinstance(validated, dict):
            return ActionResult(errors=validated)

        try:
            bookmark = await self._store.insert(self._user_id, validated)
        except PersistenceError as e:
            return ActionResult(errors={"form": str(e)})
        return ActionResult(bookmark=bookmark)

    async def request_delete(self, bookmark_id: UUID) -> ActionResult:
        """
        Delete a bookmark through the persistence layer.

        The id is marked pending for the duration of the call. The row leaves the
        list only via ``apply_delete`` or a later ``seed``.
        """
        self._pending[bookmark_id] += 1
        self._notify()
        try:
            await self._store.delete(bookmark_id, self._user_id)
        except PersistenceError as e:
            return ActionResult(errors={"form": str(e)})
        finally:
            self._pending[bookmark_id] -= 1
            if self._pending[bookmark_id] <= 0:
                del self._pending[bookmark_id]
            self._notify()
        return ActionResult()

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change(self.view())
