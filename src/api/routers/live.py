"""WebSocket endpoint that keeps an open dashboard in sync with the change feed."""
import logging

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status
from sqlalchemy.exc import SQLAlchemyError

from api.dependencies import get_settings
from core.auth import DEV_SESSION_TOKEN, authenticate_token, resolve_access_token
from core.change_feed import get_change_feed
from core.config import Settings
from db.session import async_session_factory, session_scope
from services.bookmark_service import SqlBookmarkStore
from services.dashboard_session import DashboardSession

logger = logging.getLogger(__name__)

router = APIRouter(tags=["live"])

# Application-defined close code for a handshake without a valid session
WS_CLOSE_UNAUTHENTICATED = 4401


@router.websocket("/ws/bookmarks")
async def bookmarks_socket(
    websocket: WebSocket,
    settings: Settings = Depends(get_settings),
) -> None:
    """
    Live bookmark state for one dashboard tab.

    Server messages: ``{"type": "state", ...}`` after every change and
    ``{"type": "action_result", ...}`` after every action.
    Client messages: ``{"action": "add", "url", "title"}`` and
    ``{"action": "delete", "id"}``.
    """
    access_token = resolve_access_token(websocket, settings)
    try:
        async with session_scope() as db:
            user = await authenticate_token(db, access_token, settings)
            user_id = user.id
    except HTTPException as e:
        logger.info("Rejecting dashboard socket: %s", e.detail)
        await websocket.close(code=WS_CLOSE_UNAUTHENTICATED)
        return
    except SQLAlchemyError:
        logger.exception("Dashboard socket handshake failed")
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    if access_token is None and settings.dev_mode:
        access_token = DEV_SESSION_TOKEN

    async def get_session() -> str | None:
        return access_token

    await websocket.accept()
    session = DashboardSession(
        user_id=user_id,
        store=SqlBookmarkStore(async_session_factory),
        feed=get_change_feed(),
        get_session=get_session,
        send=websocket.send_json,
    )
    async with session:
        try:
            while True:
                try:
                    message = await websocket.receive_json()
                except ValueError:
                    logger.debug("Ignoring non-JSON dashboard message")
                    continue
                if isinstance(message, dict):
                    session.dispatch(message)
        except WebSocketDisconnect:
            logger.debug("Dashboard socket closed for user %s", user_id)
