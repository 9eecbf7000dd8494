"""Typed change-feed events, decoded once from the raw wire payload."""
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from core.change_feed import ChangeEventType
from schemas.bookmark import BookmarkRecord


@dataclass(frozen=True)
class InsertEvent:
    """A row was inserted; carries the full new row."""

    bookmark: BookmarkRecord


@dataclass(frozen=True)
class DeleteEvent:
    """A row was deleted; only its id survives in the old-row payload."""

    bookmark_id: UUID


@dataclass(frozen=True)
class UnknownEvent:
    """Any other event kind. Dropped by consumers."""

    event_type: str


ChangeEvent = InsertEvent | DeleteEvent | UnknownEvent


def decode_change_event(payload: dict[str, Any]) -> ChangeEvent:
    """
    Classify a change-feed payload by its ``event_type`` tag.

    Raises:
        pydantic.ValidationError: If an INSERT's new-row payload is not a valid bookmark.
        ValueError: If a DELETE's old-row payload has no usable id.
    """
    event_type = str(payload.get("event_type", "")).upper()

    if event_type == ChangeEventType.INSERT:
        return InsertEvent(bookmark=BookmarkRecord.model_validate(payload.get("new") or {}))

    if event_type == ChangeEventType.DELETE:
        old = payload.get("old") or {}
        if "id" not in old:
            raise ValueError("DELETE event is missing the old row id")
        return DeleteEvent(bookmark_id=UUID(str(old["id"])))

    return UnknownEvent(event_type=event_type)
