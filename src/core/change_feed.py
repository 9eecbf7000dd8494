"""
Per-user change feed for table insert/delete events, carried over Redis pub/sub.

Each owner gets one channel per table (``<prefix>:<table>:<user_id>``), so a
subscriber only ever sees rows it owns. Subscribing requires an access token; the
feed resolves the owner from the token before attaching to the channel.

Writers do not publish directly. Service functions record events on the database
session with ``record_change()`` and the unit-of-work publishes them with
``publish_recorded_changes()`` once the transaction has committed, so a rolled-back
write never reaches subscribers.
"""
import asyncio
import contextlib
import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any
from uuid import UUID

from redis.asyncio.client import PubSub
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from core.redis import RedisClient
from models.base import utc_now

logger = logging.getLogger(__name__)

PENDING_CHANGES_KEY = "pending_change_events"


class ChangeEventType(StrEnum):
    """Kind tag carried in every change event payload."""

    INSERT = "INSERT"
    DELETE = "DELETE"


class ChangeFeedError(Exception):
    """Raised when a change feed subscription cannot be established."""


# Receives the decoded JSON payload of each event
ChangeCallback = Callable[[dict[str, Any]], None]
# Resolves an access token to the id of the user it belongs to
TokenAuthorizer = Callable[[str], Awaitable[UUID]]


@dataclass
class Subscription:
    """Handle for one live subscription, returned by ``ChangeFeed.subscribe``."""

    name: str
    channel: str
    pubsub: PubSub
    task: asyncio.Task | None = None
    closed: bool = field(default=False)


def build_change_event(
    table: str,
    event_type: ChangeEventType,
    new: dict[str, Any] | None = None,
    old: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the wire payload for a change event."""
    return {
        "table": table,
        "event_type": event_type.value,
        "new": new or {},
        "old": old or {},
        "commit_timestamp": utc_now().isoformat(),
    }


def channel_name(prefix: str, table: str, user_id: UUID) -> str:
    """Channel carrying the events of one table for one owner."""
    return f"{prefix}:{table}:{user_id}"


class ChangeFeed:
    """Publishes and delivers per-user change events over Redis pub/sub."""

    def __init__(
        self,
        redis_client: RedisClient | None,
        authorize: TokenAuthorizer,
        prefix: str = "changes",
    ) -> None:
        self._redis = redis_client
        self._authorize = authorize
        self._prefix = prefix

    @property
    def is_available(self) -> bool:
        """Whether events can currently be published and delivered."""
        return self._redis is not None and self._redis.is_connected

    async def publish(self, user_id: UUID, event: dict[str, Any]) -> bool:
        """Publish an event to the owner's channel. Best effort; False if undelivered."""
        if self._redis is None:
            return False
        channel = channel_name(self._prefix, event["table"], user_id)
        published = await self._redis.publish(channel, json.dumps(event, default=str))
        if published:
            logger.debug(
                "change_event_published",
                extra={"channel": channel, "event_type": event["event_type"]},
            )
        return published

    async def subscribe(
        self,
        table: str,
        events: Iterable[ChangeEventType],
        callback: ChangeCallback,
        access_token: str,
        name: str,
    ) -> Subscription:
        """
        Subscribe to insert/delete events on ``table`` for the token's owner.

        Args:
            table: Table whose events to receive.
            events: Event kinds to deliver; other kinds are skipped.
            callback: Called with each event payload, on the event loop.
            access_token: Session access token; determines the owner channel.
            name: Unique name for this subscription (used in logs).

        Returns:
            Handle to pass to ``unsubscribe``.

        Raises:
            ChangeFeedError: If the feed is unavailable, the token is rejected, the
                authorizer fails, or the channel cannot be joined. Nothing is left
                open in that case.
        """
        pubsub = self._redis.pubsub() if self._redis is not None else None
        if pubsub is None:
            raise ChangeFeedError("Change feed unavailable")

        try:
            user_id = await self._authorize(access_token)
            channel = channel_name(self._prefix, table, user_id)
            await pubsub.subscribe(channel)
        except ChangeFeedError:
            await self._close_pubsub(pubsub)
            raise
        except Exception as e:
            await self._close_pubsub(pubsub)
            raise ChangeFeedError(f"Could not join change feed: {e}") from e

        subscription = Subscription(name=name, channel=channel, pubsub=pubsub)
        subscription.task = asyncio.create_task(
            self._read(subscription, frozenset(events), callback),
            name=f"change-feed-{name}",
        )
        logger.info("change_feed_subscribed", extra={"subscription": name, "channel": channel})
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        """Stop delivery and release the subscription's connection. Safe to call twice."""
        if subscription.closed:
            return
        subscription.closed = True

        if subscription.task is not None:
            subscription.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await subscription.task

        await self._close_pubsub(subscription.pubsub, subscription.channel)
        logger.info("change_feed_unsubscribed", extra={"subscription": subscription.name})

    async def _read(
        self,
        subscription: Subscription,
        events: frozenset[ChangeEventType],
        callback: ChangeCallback,
    ) -> None:
        """Deliver messages from the channel until cancelled or the connection drops."""
        try:
            async for message in subscription.pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    payload = json.loads(message["data"])
                    if not isinstance(payload, dict):
                        raise TypeError("event payload is not an object")
                except (TypeError, ValueError):
                    logger.warning(
                        "change_event_malformed", extra={"subscription": subscription.name},
                    )
                    continue
                if payload.get("event_type") not in events:
                    continue
                try:
                    callback(payload)
                except Exception:
                    logger.exception(
                        "change_event_callback_failed",
                        extra={"subscription": subscription.name},
                    )
        except RedisError as e:
            # No reconnect: live updates stop until the subscriber remounts
            logger.warning(
                "change_feed_connection_lost",
                extra={"subscription": subscription.name, "error": str(e)},
            )

    async def _close_pubsub(self, pubsub: PubSub, channel: str | None = None) -> None:
        try:
            if channel is not None:
                await pubsub.unsubscribe(channel)
            await pubsub.aclose()
        except RedisError as e:
            logger.warning("Redis pub/sub close failed: %s", e)


def record_change(db: AsyncSession, user_id: UUID, event: dict[str, Any]) -> None:
    """Queue an event on the session; it is published after the session commits."""
    db.info.setdefault(PENDING_CHANGES_KEY, []).append((user_id, event))


def discard_recorded_changes(db: AsyncSession) -> None:
    """Drop queued events (the transaction they describe was rolled back)."""
    db.info.pop(PENDING_CHANGES_KEY, None)


async def publish_recorded_changes(db: AsyncSession, feed: "ChangeFeed | None" = None) -> int:
    """
    Publish events queued on a committed session.

    Returns the number of events delivered to Redis. Publishing is best effort:
    subscribers that miss an event still converge on the next snapshot.
    """
    pending = db.info.pop(PENDING_CHANGES_KEY, [])
    if not pending:
        return 0
    feed = feed if feed is not None else get_change_feed()
    if feed is None:
        logger.debug("No change feed configured, dropping %s event(s)", len(pending))
        return 0

    delivered = 0
    for user_id, event in pending:
        if await feed.publish(user_id, event):
            delivered += 1
    return delivered


# Global change feed state using a container to avoid global statement
class _ChangeFeedState:
    """Container for global change feed state."""

    feed: ChangeFeed | None = None


_state = _ChangeFeedState()


def get_change_feed() -> ChangeFeed | None:
    """Get the global change feed instance."""
    return _state.feed


def set_change_feed(feed: ChangeFeed | None) -> None:
    """Set the global change feed instance."""
    _state.feed = feed
