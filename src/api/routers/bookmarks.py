"""Bookmark JSON endpoints."""
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_async_session, get_current_user
from models.user import User
from schemas.bookmark import BookmarkCreate, BookmarkListResponse, BookmarkRecord
from services import bookmark_service

router = APIRouter(prefix="/bookmarks", tags=["bookmarks"])


@router.post("/", response_model=BookmarkRecord, status_code=201)
async def create_bookmark(
    data: BookmarkCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
) -> BookmarkRecord:
    """Create a new bookmark. Open dashboards receive it through the change feed."""
    try:
        bookmark = await bookmark_service.create_bookmark(db, current_user.id, data)
    except SQLAlchemyError:
        raise HTTPException(status_code=503, detail="Could not save bookmark")
    return BookmarkRecord.model_validate(bookmark)


@router.get("/", response_model=BookmarkListResponse)
async def list_bookmarks(
    offset: int = Query(default=0, ge=0, description="Pagination offset"),
    limit: int = Query(default=50, ge=1, le=100, description="Pagination limit"),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
) -> BookmarkListResponse:
    """List the current user's bookmarks, newest first."""
    bookmarks = await bookmark_service.list_bookmarks(
        db, current_user.id, offset=offset, limit=limit,
    )
    total = await bookmark_service.count_bookmarks(db, current_user.id)
    return BookmarkListResponse(
        items=[BookmarkRecord.model_validate(b) for b in bookmarks],
        total=total,
    )


@router.delete("/{bookmark_id}", status_code=204)
async def delete_bookmark(
    bookmark_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
) -> None:
    """Delete a bookmark owned by the current user."""
    try:
        deleted = await bookmark_service.delete_bookmark(db, current_user.id, bookmark_id)
    except SQLAlchemyError:
        raise HTTPException(status_code=503, detail="Could not delete bookmark")
    if not deleted:
        raise HTTPException(status_code=404, detail="Bookmark not found")
