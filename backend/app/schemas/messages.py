"""Schemas related to direct messages and unread accounting."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models.enums import MediaType
from app.schemas.types import UtcDateTime


class MessageRead(BaseModel):
    """Serialized representation of a persisted message."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    conversation_id: int
    sender_id: int
    receiver_id: int
    content: str
    media_url: str | None = None
    media_type: MediaType | None = None
    read: bool = False
    read_at: UtcDateTime | None = None
    is_deleted: bool = False
    created_at: UtcDateTime


class MarkReadRequest(BaseModel):
    """Target either a whole conversation or an explicit set of messages."""

    conversation_id: int | None = None
    message_ids: list[int] | None = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def ensure_target(self) -> "MarkReadRequest":
        if self.conversation_id is None and not self.message_ids:
            raise ValueError("Either conversation_id or message_ids must be provided")
        return self


class MarkReadResult(BaseModel):
    """Messages whose read flag flipped during this call."""

    updated: int = 0
    message_ids: list[int] = Field(default_factory=list)


class UnreadSummary(BaseModel):
    """Unread counts per conversation plus the aggregate."""

    total: int = Field(0, ge=0)
    conversations: dict[int, int] = Field(default_factory=dict)
