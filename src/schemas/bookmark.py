"""Pydantic schemas for bookmarks."""
from datetime import UTC, datetime
from uuid import UUID

from pydantic import AnyUrl, BaseModel, ConfigDict, ValidationError, field_validator

from core.config import get_settings


class BookmarkCreate(BaseModel):
    """Schema for creating a new bookmark."""

    model_config = ConfigDict(str_strip_whitespace=True)

    url: AnyUrl
    title: str

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        """Require a non-empty title within the configured length limit."""
        if not v:
            raise ValueError("Title is required")
        max_length = get_settings().max_title_length
        if len(v) > max_length:
            raise ValueError(f"Title must be at most {max_length} characters")
        return v


class BookmarkRecord(BaseModel):
    """
    A bookmark as held in dashboard state and carried in change events.

    Built from ORM rows (snapshots) and from change-feed payloads alike, so both
    sources compare equal for the same row.
    """

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: UUID
    url: str
    title: str
    created_at: datetime
    user_id: UUID

    @field_validator("created_at")
    @classmethod
    def ensure_timezone(cls, v: datetime) -> datetime:
        """Treat naive timestamps (e.g. from SQLite) as UTC so ordering compares cleanly."""
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v


class BookmarkListResponse(BaseModel):
    """Newest-first list of the current user's bookmarks."""

    items: list[BookmarkRecord]
    total: int


def validate_new_bookmark(url: str | None, title: str | None) -> BookmarkCreate | dict[str, str]:
    """
    Validate add-form input.

    Returns the parsed ``BookmarkCreate`` on success, otherwise a mapping of field
    name to a message suitable for showing next to that field.
    """
    try:
        return BookmarkCreate(url=url or "", title=title or "")
    except ValidationError as e:
        errors: dict[str, str] = {}
        for error in e.errors():
            field = str(error["loc"][0]) if error["loc"] else "form"
            if field in errors:
                continue
            if field == "url":
                errors[field] = "URL is required" if not (url or "").strip() else (
                    "Please enter a valid URL"
                )
            elif field == "title" and not (title or "").strip():
                errors[field] = "Title is required"
            else:
                # Strip pydantic's "Value error, " prefix from custom validator messages
                errors[field] = error["msg"].removeprefix("Value error, ")
        return errors
