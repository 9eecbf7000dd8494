"""Change-feed listener that forwards live bookmark events to a reconciler."""
import logging
from collections.abc import Awaitable, Callable
from types import TracebackType
from typing import Any
from uuid import uuid4

from core.change_feed import ChangeEventType, ChangeFeed, ChangeFeedError, Subscription
from models.bookmark import Bookmark
from schemas.change_event import DeleteEvent, InsertEvent, UnknownEvent, decode_change_event
from services.reconciler import BookmarkReconciler

logger = logging.getLogger(__name__)

# Returns the current session's access token, or None when signed out
SessionProvider = Callable[[], Awaitable[str | None]]


class ChangeFeedListener:
    """
    Owns one change-feed subscription for one mounted dashboard.

    ``start()`` resolves the session and subscribes; ``stop()`` releases the
    subscription. Both are safe to call more than once, and the listener can be
    used as an async context manager so release happens on every exit path.

    Failures to subscribe are logged and leave the listener idle: the dashboard
    keeps working from snapshots alone. A dropped connection is not retried.
    """

    def __init__(
        self,
        feed: ChangeFeed | None,
        reconciler: BookmarkReconciler,
        get_session: SessionProvider,
        table: str = Bookmark.__tablename__,
    ) -> None:
        self._feed = feed
        self._reconciler = reconciler
        self._get_session = get_session
        self._table = table
        self._subscription: Subscription | None = None
        # Unique per mount so concurrent tabs never share a subscription
        self.name = f"{table}-{uuid4().hex}"

    @property
    def is_subscribed(self) -> bool:
        return self._subscription is not None

    async def start(self) -> bool:
        """
        Subscribe to the user's insert/delete events.

        Returns:
            True if a subscription is active after the call.
        """
        if self._subscription is not None:
            return True

        if self._feed is None:
            logger.warning("No change feed configured, live updates disabled for %s", self.name)
            return False

        try:
            access_token = await self._get_session()
        except Exception:
            logger.warning("Session lookup failed, not subscribing %s", self.name, exc_info=True)
            return False
        if not access_token:
            logger.info("No session found, not subscribing %s", self.name)
            return False

        try:
            self._subscription = await self._feed.subscribe(
                table=self._table,
                events=(ChangeEventType.INSERT, ChangeEventType.DELETE),
                callback=self.handle_payload,
                access_token=access_token,
                name=self.name,
            )
        except ChangeFeedError as e:
            logger.warning("Change feed subscription failed for %s: %s", self.name, e)
            return False
        return True

    async def stop(self) -> None:
        """Release the subscription, if any."""
        subscription, self._subscription = self._subscription, None
        if subscription is not None and self._feed is not None:
            await self._feed.unsubscribe(subscription)

    def handle_payload(self, payload: dict[str, Any]) -> None:
        """Decode one raw event and apply it to the reconciler."""
        try:
            event = decode_change_event(payload)
        except ValueError as e:
            logger.warning("Dropping undecodable change event on %s: %s", self.name, e)
            return

        if isinstance(event, InsertEvent):
            self._reconciler.apply_insert(event.bookmark)
        elif isinstance(event, DeleteEvent):
            self._reconciler.apply_delete(event.bookmark_id)
        elif isinstance(event, UnknownEvent):
            logger.debug("Ignoring %r change event on %s", event.event_type, self.name)

    async def __aenter__(self) -> "ChangeFeedListener":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()
