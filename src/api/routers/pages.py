"""Server-rendered pages: landing (sign-in) and the live dashboard."""
from datetime import datetime
from pathlib import Path
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_async_session, get_optional_user
from models.user import User
from schemas.bookmark import BookmarkRecord
from services import bookmark_service

router = APIRouter(tags=["pages"], include_in_schema=False)

templates = Jinja2Templates(directory=Path(__file__).resolve().parent.parent / "templates")


def display_domain(url: str) -> str:
    """Hostname shown under a bookmark title, without a leading 'www.'."""
    hostname = urlparse(url).hostname
    if not hostname:
        return url
    return hostname.removeprefix("www.")


def display_date(value: datetime) -> str:
    """Short date such as 'Mar 4, 2025'."""
    return f"{value:%b} {value.day}, {value.year}"


templates.env.filters["domain"] = display_domain
templates.env.filters["short_date"] = display_date


@router.get("/", response_class=HTMLResponse)
async def landing(
    request: Request,
    current_user: User | None = Depends(get_optional_user),
) -> Response:
    """Landing page with the sign-in entry point. Signed-in users go straight to the dashboard."""
    if current_user is not None:
        return RedirectResponse("/dashboard", status_code=303)
    return templates.TemplateResponse(request, "landing.html", {})


@router.get("/dashboard", response_class=HTMLResponse)
async def dashboard(
    request: Request,
    current_user: User | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_async_session),
) -> Response:
    """
    Dashboard with the add form and the user's bookmarks.

    The list is rendered from a fresh snapshot; the page then connects to
    ``/ws/bookmarks`` and re-renders from live state.
    """
    if current_user is None:
        return RedirectResponse("/", status_code=303)

    bookmarks = await bookmark_service.list_bookmarks(db, current_user.id)
    return templates.TemplateResponse(
        request,
        "dashboard.html",
        {
            "user": current_user,
            "bookmarks": [BookmarkRecord.model_validate(b) for b in bookmarks],
        },
    )
