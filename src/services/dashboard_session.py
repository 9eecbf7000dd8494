"""Per-connection dashboard session: reconciler, listener and outbound messages."""
import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Coroutine
from types import TracebackType
from typing import Any
from uuid import UUID

from core.change_feed import ChangeFeed
from services.exceptions import PersistenceError
from services.listener import ChangeFeedListener, SessionProvider
from services.reconciler import ActionResult, BookmarkReconciler, BookmarkStore, DashboardView

logger = logging.getLogger(__name__)

Sender = Callable[[dict[str, Any]], Awaitable[None]]


def state_message(view: DashboardView) -> dict[str, Any]:
    """Serialize dashboard state for the browser."""
    return {
        "type": "state",
        "bookmarks": [b.model_dump(mode="json") for b in view.bookmarks],
        "pending": sorted(str(bookmark_id) for bookmark_id in view.pending),
    }


def action_result_message(action: str, result: ActionResult) -> dict[str, Any]:
    """Serialize the outcome of an add/delete action."""
    return {
        "type": "action_result",
        "action": action,
        "ok": result.ok,
        "errors": result.errors,
    }


class DashboardSession:
    """
    Live state for one open dashboard.

    Entering the session seeds the reconciler from a snapshot, subscribes the
    change-feed listener and starts a sender task that forwards state updates in
    order. Actions dispatched from the browser run as separate tasks; once an action
    has reached the database the session re-fetches a snapshot and offers it to
    ``seed``, which the reconciler ignores after a live takeover.

    Leaving the session cancels actions still in flight (their results are dropped),
    releases the subscription and stops the sender.
    """

    def __init__(
        self,
        user_id: UUID,
        store: BookmarkStore,
        feed: ChangeFeed | None,
        get_session: SessionProvider,
        send: Sender,
    ) -> None:
        self._store = store
        self._send = send
        self._outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._actions: set[asyncio.Task] = set()
        self._sender: asyncio.Task | None = None
        self.reconciler = BookmarkReconciler(user_id, store, on_change=self._queue_state)
        self.listener = ChangeFeedListener(feed, self.reconciler, get_session)

    async def __aenter__(self) -> "DashboardSession":
        self._sender = asyncio.create_task(self._drain_outbox())
        try:
            if not await self.refresh():
                self._queue_state(self.reconciler.view())
            await self.listener.start()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def refresh(self) -> bool:
        """Re-fetch a snapshot and offer it to the reconciler. Returns True if applied."""
        try:
            snapshot = await self._store.select_all(self.reconciler.user_id)
        except PersistenceError as e:
            logger.warning("Snapshot refresh failed for user %s: %s", self.reconciler.user_id, e)
            return False
        return self.reconciler.seed(snapshot)

    def dispatch(self, message: dict[str, Any]) -> None:
        """Start handling one message received from the browser."""
        action = str(message.get("action", ""))
        if action == "add":
            self._spawn(self._add(message.get("url"), message.get("title")))
        elif action == "delete":
            self._spawn(self._delete(message.get("id")))
        else:
            self._outbox.put_nowait(
                action_result_message(action, ActionResult(errors={"form": "Unknown action"})),
            )

    async def join(self) -> None:
        """Wait for in-flight actions and queued messages to finish."""
        while self._actions:
            await asyncio.gather(*list(self._actions), return_exceptions=True)
        if self._sender is None or self._sender.done():
            return
        # The sender can die mid-drain; stop waiting as soon as it does
        drained = asyncio.create_task(self._outbox.join())
        try:
            await asyncio.wait({drained, self._sender}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            drained.cancel()

    async def close(self) -> None:
        """Cancel pending work and release the subscription."""
        for task in list(self._actions):
            task.cancel()
        await asyncio.gather(*list(self._actions), return_exceptions=True)
        await self.listener.stop()
        if self._sender is not None:
            self._sender.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sender
            self._sender = None

    async def _add(self, url: Any, title: Any) -> None:
        result = await self.reconciler.request_add(
            url if isinstance(url, str) else None,
            title if isinstance(title, str) else None,
        )
        self._outbox.put_nowait(action_result_message("add", result))
        if result.ok:
            await self.refresh()

    async def _delete(self, raw_id: Any) -> None:
        try:
            bookmark_id = UUID(str(raw_id))
        except ValueError:
            self._outbox.put_nowait(
                action_result_message("delete", ActionResult(errors={"id": "Invalid bookmark id"})),
            )
            return
        result = await self.reconciler.request_delete(bookmark_id)
        self._outbox.put_nowait(action_result_message("delete", result))
        if result.ok:
            await self.refresh()

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._actions.add(task)
        task.add_done_callback(self._actions.discard)

    def _queue_state(self, view: DashboardView) -> None:
        self._outbox.put_nowait(state_message(view))

    def _discard_outbox(self) -> None:
        while not self._outbox.empty():
            self._outbox.get_nowait()
            self._outbox.task_done()

    async def _drain_outbox(self) -> None:
        while True:
            message = await self._outbox.get()
            try:
                await self._send(message)
            except Exception:
                # Socket gone; the session is about to be closed by its owner
                logger.info("Dashboard send failed, dropping further updates", exc_info=True)
                self._outbox.task_done()
                self._discard_outbox()
                return
            self._outbox.task_done()
