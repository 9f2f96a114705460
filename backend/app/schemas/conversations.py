"""Schemas for conversation resolution and listing."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.schemas.messages import MessageRead
from app.schemas.types import UtcDateTime
from app.schemas.users import PublicUser


class ResolveConversationRequest(BaseModel):
    other_user_id: int = Field(..., gt=0)


class ParticipantRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    last_read_at: UtcDateTime | None = None
    is_muted: bool = False
    is_archived: bool = False


class ConversationRead(BaseModel):
    """Canonical conversation between two users."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    created_at: UtcDateTime
    updated_at: UtcDateTime
    participants: list[ParticipantRead] = Field(default_factory=list)


class ConversationSummary(BaseModel):
    """Inbox entry rendered in the conversation list."""

    id: int
    updated_at: UtcDateTime
    other_user: PublicUser | None = None
    last_message: MessageRead | None = None
    unread_count: int = Field(0, ge=0)
    is_muted: bool = False
    is_archived: bool = False


class ParticipantUpdate(BaseModel):
    """Payload for toggling per-user conversation preferences."""

    is_muted: bool | None = None
    is_archived: bool | None = None

    @model_validator(mode="after")
    def ensure_any_flag(self) -> "ParticipantUpdate":
        if self.is_muted is None and self.is_archived is None:
            raise ValueError("At least one of is_muted or is_archived must be provided")
        return self
