"""Schemas for notification fan-out."""

from __future__ import annotations

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from app.models.enums import NotificationType
from app.schemas.types import UtcDateTime


class NotificationRead(BaseModel):
    """Serialized notification addressed to the current user."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: int
    user_id: int
    type: NotificationType
    event_key: str
    title: str
    message: str = ""
    related_user_id: int | None = None
    related_post_id: int | None = None
    action_url: str | None = None
    is_read: bool = Field(default=False, validation_alias=AliasChoices("is_read", "read"))
    read_at: UtcDateTime | None = None
    created_at: UtcDateTime


class NotificationPage(BaseModel):
    items: list[NotificationRead] = Field(default_factory=list)
    unread_count: int = Field(0, ge=0)


class NotificationReadAllResult(BaseModel):
    updated: int = 0
    notification_ids: list[int] = Field(default_factory=list)


class CleanupResult(BaseModel):
    """Outcome of the notification retention job."""

    marked_read: int = 0
    deleted: int = 0


class NotificationPreferences(BaseModel):
    """Realtime alert switches; ``push_notifications`` silences every alert."""

    model_config = ConfigDict(from_attributes=True)

    push_notifications: bool = True
    messages: bool = True
    followers: bool = True
    likes: bool = True
    comments: bool = True


class NotificationPreferencesUpdate(BaseModel):
    push_notifications: bool | None = None
    messages: bool | None = None
    followers: bool | None = None
    likes: bool | None = None
    comments: bool | None = None

    @model_validator(mode="after")
    def ensure_any_switch(self) -> "NotificationPreferencesUpdate":
        if not self.model_dump(exclude_none=True):
            raise ValueError("At least one preference must be provided")
        return self
