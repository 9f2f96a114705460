"""Message store: append, fetch and soft delete."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import MediaType, Message, User
from app.models.base import utcnow
from app.schemas import MessageRead, NotificationRead
from app.services.conversations import other_participant_id, require_participant
from app.services.errors import InvalidArgument, NotFound, PermissionDenied
from app.services.notifications import emit_notification, message_draft

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MediaRef:
    """Location of an already uploaded attachment."""

    url: str
    media_type: MediaType


def validate_content(content: str | None, *, has_media: bool, max_length: int) -> str:
    text = (content or "").strip()
    if not text and not has_media:
        raise InvalidArgument("Message must contain text or an attachment")
    if len(text) > max_length:
        raise InvalidArgument(f"Message exceeds {max_length} characters")
    return text


def check_can_send(db: Session, conversation_id: int, sender_id: int) -> int:
    """Validate the sender's membership and return the receiver id."""

    conversation, _ = require_participant(db, conversation_id, sender_id)
    return other_participant_id(conversation, sender_id)


def create_message(
    db: Session,
    conversation_id: int,
    sender_id: int,
    content: str,
    media: MediaRef | None = None,
    *,
    now: datetime | None = None,
) -> tuple[MessageRead, NotificationRead | None]:
    """Append a message, bump the conversation and notify the receiver.

    The message and its notification are committed together. Returns the
    stored message and the notification when one was created.
    """

    conversation, _ = require_participant(db, conversation_id, sender_id)
    receiver_id = other_participant_id(conversation, sender_id)
    sender = db.get(User, sender_id)
    if sender is None:
        raise NotFound("Sender not found")
    timestamp = now or utcnow()

    message = Message(
        conversation_id=conversation.id,
        sender_id=sender_id,
        receiver_id=receiver_id,
        content=content,
        media_url=media.url if media else None,
        media_type=media.media_type if media else None,
        read=False,
        created_at=timestamp,
    )
    db.add(message)
    conversation.updated_at = timestamp
    db.flush()

    notification, created = emit_notification(
        db,
        recipient_id=receiver_id,
        actor_id=sender_id,
        draft=message_draft(sender, message),
    )
    db.commit()
    db.refresh(message)

    logger.info(
        "Message stored",
        extra={
            "message_id": message.id,
            "conversation_id": conversation.id,
            "sender_id": sender_id,
            "receiver_id": receiver_id,
        },
    )
    return MessageRead.model_validate(message), notification if created else None


def fetch_messages(
    db: Session, conversation_id: int, user_id: int, *, now: datetime | None = None
) -> list[MessageRead]:
    """Visible messages of a conversation in display order.

    Opening the thread advances the caller's ``last_read_at``; read flags are
    left to :func:`app.services.unread.mark_read`.
    """

    _, participant = require_participant(db, conversation_id, user_id)
    stmt = (
        select(Message)
        .where(Message.conversation_id == conversation_id, Message.is_deleted.is_(False))
        .order_by(Message.created_at, Message.id)
    )
    messages = [MessageRead.model_validate(row) for row in db.execute(stmt).scalars()]
    participant.last_read_at = now or utcnow()
    db.commit()
    return messages


def delete_message(db: Session, message_id: int, requester_id: int) -> tuple[MessageRead, MessageRead]:
    """Soft delete a message on behalf of its sender. Returns ``(after, before)``."""

    message = db.get(Message, message_id)
    if message is None:
        raise NotFound("Message not found")
    if message.sender_id != requester_id:
        raise PermissionDenied("Only the sender can delete a message")
    before = MessageRead.model_validate(message)
    if not message.is_deleted:
        message.is_deleted = True
        db.commit()
        logger.info("Message deleted", extra={"message_id": message_id, "user_id": requester_id})
    return MessageRead.model_validate(message), before
