"""Change-feed envelopes and the typed events they decode into.

Payloads arrive from the transport as loosely typed dictionaries. They are
converted into one of the frozen event classes below as soon as they are
received; anything that does not fit is dropped with a warning.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

MESSAGE_INSERTED = "message.inserted"
MESSAGE_UPDATED = "message.updated"
NOTIFICATION_INSERTED = "notification.inserted"
NOTIFICATION_UPDATED = "notification.updated"
NOTIFICATION_DELETED = "notification.deleted"


def inbox_topic(user_id: int) -> str:
    return f"inbox:{user_id}"


def conversation_topic(conversation_id: int) -> str:
    return f"conversation:{conversation_id}"


class _Row(BaseModel):
    model_config = ConfigDict(
        extra="ignore", populate_by_name=True, from_attributes=True, frozen=True
    )

    @field_validator("*", mode="after")
    @classmethod
    def _utc(cls, value: Any) -> Any:
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class MessageRow(_Row):
    id: int
    conversation_id: int
    sender_id: int
    receiver_id: int
    content: str = ""
    media_url: str | None = None
    media_type: str | None = None
    read: bool = False
    read_at: datetime | None = None
    is_deleted: bool = False
    created_at: datetime

    @property
    def sort_key(self) -> tuple[datetime, int]:
        return (self.created_at, self.id)


class NotificationRow(_Row):
    id: int
    user_id: int
    type: str
    title: str = ""
    message: str = ""
    related_user_id: int | None = None
    related_post_id: int | None = None
    action_url: str | None = None
    is_read: bool = Field(default=False, validation_alias=AliasChoices("is_read", "read"))
    read_at: datetime | None = None
    created_at: datetime


@dataclass(frozen=True, slots=True)
class MessageInserted:
    row: MessageRow


@dataclass(frozen=True, slots=True)
class MessageUpdated:
    row: MessageRow
    before: MessageRow | None = None


@dataclass(frozen=True, slots=True)
class NotificationInserted:
    row: NotificationRow


@dataclass(frozen=True, slots=True)
class NotificationUpdated:
    row: NotificationRow
    before: NotificationRow | None = None

    @property
    def became_read(self) -> bool:
        if not self.row.is_read:
            return False
        return self.before is None or not self.before.is_read


@dataclass(frozen=True, slots=True)
class NotificationDeleted:
    row: NotificationRow


ChangeEvent = Union[
    MessageInserted,
    MessageUpdated,
    NotificationInserted,
    NotificationUpdated,
    NotificationDeleted,
]


def _row_payload(row: Any) -> dict[str, Any] | None:
    if row is None:
        return None
    if isinstance(row, BaseModel):
        return row.model_dump(mode="json")
    return dict(row)


def build_change_payload(
    event_type: str,
    *,
    row_after: Any = None,
    row_before: Any = None,
    origin: str | None = None,
) -> dict[str, Any]:
    """Assemble the JSON envelope published on the change feed."""

    return {
        "event_type": event_type,
        "row_before": _row_payload(row_before),
        "row_after": _row_payload(row_after),
        "origin": origin,
    }


def parse_change_event(payload: Any) -> ChangeEvent | None:
    """Decode a raw change-feed payload, or return ``None`` if it is unusable."""

    if not isinstance(payload, dict):
        logger.warning("Ignored change event that is not an object")
        return None
    event_type = payload.get("event_type")
    after = payload.get("row_after")
    before = payload.get("row_before")
    try:
        if event_type == MESSAGE_INSERTED:
            return MessageInserted(MessageRow.model_validate(after))
        if event_type == MESSAGE_UPDATED:
            return MessageUpdated(
                MessageRow.model_validate(after),
                MessageRow.model_validate(before) if before else None,
            )
        if event_type == NOTIFICATION_INSERTED:
            return NotificationInserted(NotificationRow.model_validate(after))
        if event_type == NOTIFICATION_UPDATED:
            return NotificationUpdated(
                NotificationRow.model_validate(after),
                NotificationRow.model_validate(before) if before else None,
            )
        if event_type == NOTIFICATION_DELETED:
            return NotificationDeleted(NotificationRow.model_validate(before or after))
    except ValidationError as exc:
        logger.warning(
            "Ignored malformed change event",
            extra={"event_type": event_type, "errors": exc.error_count()},
        )
        return None
    logger.warning("Ignored unknown change event", extra={"event_type": event_type})
    return None
