"""Authentication module for Auth0 JWT validation and session cookies."""
import logging
from uuid import UUID

import httpx
import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.responses import Response
from jwt import PyJWKClient
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import HTTPConnection

from core.change_feed import ChangeFeedError
from core.config import Settings, get_settings
from db.session import get_async_session, session_scope
from models.user import User

logger = logging.getLogger(__name__)


# Session value used in DEV_MODE, where no identity provider is involved
DEV_SESSION_TOKEN = "dev-session"  # noqa: S105

# Cache for JWKS client (reuse across requests)
_jwks_clients: dict[str, PyJWKClient] = {}


def get_jwks_client(settings: Settings) -> PyJWKClient:
    """Get or create a cached JWKS client for the given settings."""
    if settings.auth0_jwks_url not in _jwks_clients:
        _jwks_clients[settings.auth0_jwks_url] = PyJWKClient(
            settings.auth0_jwks_url,
            cache_jwk_set=True,
            lifespan=3600,  # Cache keys for 1 hour
        )
    return _jwks_clients[settings.auth0_jwks_url]


def decode_jwt(token: str, settings: Settings) -> dict:
    """
    Decode and validate a JWT token from Auth0.

    Raises:
        HTTPException: If token is invalid, expired, or has wrong audience/issuer.
    """
    try:
        jwks_client = get_jwks_client(settings)
        signing_key = jwks_client.get_signing_key_from_jwt(token)

        return jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            audience=settings.auth0_audience,
            issuer=settings.auth0_issuer,
        )

    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidAudienceError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid audience",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidIssuerError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid issuer",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.PyJWTError as e:
        # Log full details for debugging (server-side only)
        logger.warning("JWT validation failed: %s", e, exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except httpx.HTTPError as e:
        # Log full details for debugging (server-side only)
        logger.error("Failed to fetch JWKS from Auth0: %s", e, exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not validate credentials",
        )


async def get_or_create_user(
    db: AsyncSession,
    auth0_id: str,
    email: str | None = None,
) -> User:
    """
    Get existing user or create new one from Auth0 claims.

    Handles race conditions where multiple concurrent requests may try to create
    the same user simultaneously. If an IntegrityError occurs (due to unique
    constraint on auth0_id), the function rolls back and fetches the existing user.

    Note: Uses flush(), not commit. Session generator handles commit at request end.
    """
    result = await db.execute(select(User).where(User.auth0_id == auth0_id))
    user = result.scalar_one_or_none()

    if user is None:
        user = User(auth0_id=auth0_id, email=email)
        db.add(user)
        try:
            await db.flush()
        except IntegrityError:
            # Race condition: another request created the user between our SELECT
            # and INSERT. Rollback and fetch the existing user.
            await db.rollback()
            result = await db.execute(select(User).where(User.auth0_id == auth0_id))
            user = result.scalar_one()

    # Update email if changed in Auth0
    if email and user.email != email:
        user.email = email
        await db.flush()

    return user


async def get_or_create_dev_user(db: AsyncSession) -> User:
    """Get or create a development user for DEV_MODE."""
    return await get_or_create_user(
        db,
        auth0_id="dev|local-development-user",
        email="dev@localhost",
    )


def resolve_access_token(connection: HTTPConnection, settings: Settings) -> str | None:
    """
    Find the session's access token on a request or WebSocket handshake.

    The ``Authorization: Bearer`` header wins (API clients); otherwise the session
    cookie set at sign-in is used (pages and the live dashboard socket).
    """
    authorization = connection.headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return connection.cookies.get(settings.session_cookie_name) or None


async def authenticate_token(db: AsyncSession, token: str | None, settings: Settings) -> User:
    """
    Resolve an access token to a user.

    In DEV_MODE, bypasses token validation and returns the development user.

    Raises:
        HTTPException: 401 if the token is missing or invalid.
    """
    if settings.dev_mode:
        return await get_or_create_dev_user(db)

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_jwt(token, settings)

    # Extract user info from JWT claims
    auth0_id = payload.get("sub")
    if not auth0_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing sub claim",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return await get_or_create_user(db, auth0_id=auth0_id, email=payload.get("email"))


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_async_session),
    settings: Settings = Depends(get_settings),
) -> User:
    """Dependency that validates the session token and returns the current user."""
    return await authenticate_token(db, resolve_access_token(request, settings), settings)


async def get_optional_user(
    request: Request,
    db: AsyncSession = Depends(get_async_session),
    settings: Settings = Depends(get_settings),
) -> User | None:
    """Like ``get_current_user`` but returns None when signed out (used by pages)."""
    try:
        return await get_current_user(request, db, settings)
    except HTTPException as e:
        if e.status_code != status.HTTP_401_UNAUTHORIZED:
            raise
        return None


async def authorize_feed_token(token: str) -> UUID:
    """
    Resolve a change-feed access token to its owner's id.

    Raises:
        ChangeFeedError: If the token does not identify a user or the lookup fails.
    """
    settings = get_settings()
    try:
        async with session_scope() as db:
            user = await authenticate_token(db, token, settings)
            return user.id
    except HTTPException as e:
        raise ChangeFeedError(f"Access token rejected: {e.detail}") from e
    except SQLAlchemyError as e:
        logger.exception("Could not resolve change feed token owner")
        raise ChangeFeedError("Could not verify access token") from e


def set_session_cookie(response: Response, access_token: str, settings: Settings) -> None:
    """Store the access token in an HttpOnly session cookie."""
    response.set_cookie(
        settings.session_cookie_name,
        access_token,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
    )


def sign_out(response: Response, settings: Settings) -> None:
    """End the browser session by clearing the session cookie."""
    response.delete_cookie(
        settings.session_cookie_name,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
    )


class AuthCodeExchangeError(Exception):
    """Raised when Auth0 does not return an access token for an authorization code."""


async def exchange_authorization_code(code: str, settings: Settings) -> str:
    """
    Exchange an OAuth authorization code for an access token at the Auth0 token endpoint.

    Raises:
        AuthCodeExchangeError: If the request fails or the response has no access token.
    """
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.post(
                settings.auth0_token_url,
                data={
                    "grant_type": "authorization_code",
                    "client_id": settings.auth0_client_id,
                    "client_secret": settings.auth0_client_secret,
                    "code": code,
                    "redirect_uri": settings.auth_callback_url,
                },
            )
            response.raise_for_status()
            payload = response.json()
    except (httpx.HTTPError, ValueError) as e:
        raise AuthCodeExchangeError(f"Token exchange failed: {e}") from e

    access_token = payload.get("access_token") if isinstance(payload, dict) else None
    if not access_token:
        raise AuthCodeExchangeError("Token response did not include an access token")
    return access_token
