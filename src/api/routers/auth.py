"""Sign-in and sign-out endpoints (Auth0 authorization-code flow)."""
import logging
import secrets
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse

from api.dependencies import get_settings
from core.auth import (
    DEV_SESSION_TOKEN,
    AuthCodeExchangeError,
    exchange_authorization_code,
    set_session_cookie,
    sign_out,
)
from core.config import Settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

# Short-lived cookie binding the login redirect to its callback (CSRF protection)
STATE_COOKIE_NAME = "auth_state"
STATE_COOKIE_MAX_AGE = 600


@router.get("/login")
async def login(settings: Settings = Depends(get_settings)) -> RedirectResponse:
    """Redirect to Auth0 universal login. In DEV_MODE, sign in immediately."""
    if settings.dev_mode:
        response = RedirectResponse("/dashboard", status_code=303)
        set_session_cookie(response, DEV_SESSION_TOKEN, settings)
        return response

    state = secrets.token_urlsafe(32)
    params = {
        "response_type": "code",
        "client_id": settings.auth0_client_id,
        "redirect_uri": settings.auth_callback_url,
        "scope": "openid profile email",
        "audience": settings.auth0_audience,
        "state": state,
    }
    response = RedirectResponse(
        f"{settings.auth0_authorize_url}?{urlencode(params)}", status_code=303,
    )
    response.set_cookie(
        STATE_COOKIE_NAME,
        state,
        max_age=STATE_COOKIE_MAX_AGE,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
    )
    return response


@router.get("/callback")
async def callback(
    request: Request,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    """
    Complete sign-in: verify state, exchange the code, store the session cookie.

    Any failure sends the user back to the landing page to try again.
    """
    expected_state = request.cookies.get(STATE_COOKIE_NAME)
    if error or not code or not state or not expected_state:
        logger.warning("Sign-in callback rejected: error=%s", error or "missing parameters")
        return RedirectResponse("/", status_code=303)
    if not secrets.compare_digest(state, expected_state):
        logger.warning("Sign-in callback rejected: state mismatch")
        return RedirectResponse("/", status_code=303)

    try:
        access_token = await exchange_authorization_code(code, settings)
    except AuthCodeExchangeError as e:
        logger.warning("Sign-in callback failed: %s", e)
        return RedirectResponse("/", status_code=303)

    response = RedirectResponse("/dashboard", status_code=303)
    set_session_cookie(response, access_token, settings)
    response.delete_cookie(STATE_COOKIE_NAME)
    return response


@router.post("/sign-out")
async def sign_out_endpoint(settings: Settings = Depends(get_settings)) -> RedirectResponse:
    """Clear the session and return to the landing page."""
    response = RedirectResponse("/", status_code=303)
    sign_out(response, settings)
    return response
