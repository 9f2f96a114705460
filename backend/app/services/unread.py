"""Unread accounting derived from message rows."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.models import Conversation, ConversationParticipant, Message
from app.models.base import utcnow
from app.schemas import MessageRead, UnreadSummary
from app.services.errors import InvalidArgument, NotFound, PermissionDenied

logger = logging.getLogger(__name__)


def _unread_filter(user_id: int):
    return (
        Message.receiver_id == user_id,
        Message.read.is_(False),
        Message.is_deleted.is_(False),
    )


def _participating_ids(db: Session, user_id: int) -> list[int]:
    stmt = (
        select(ConversationParticipant.conversation_id)
        .where(ConversationParticipant.user_id == user_id)
        .order_by(ConversationParticipant.conversation_id)
    )
    return list(db.execute(stmt).scalars())


def unread_counts(db: Session, user_id: int) -> dict[int, int]:
    """Count unread messages per conversation, omitting conversations with none."""

    stmt = (
        select(Message.conversation_id, func.count(Message.id))
        .join(
            ConversationParticipant,
            (ConversationParticipant.conversation_id == Message.conversation_id)
            & (ConversationParticipant.user_id == user_id),
        )
        .where(*_unread_filter(user_id))
        .group_by(Message.conversation_id)
    )
    return {conversation_id: count for conversation_id, count in db.execute(stmt)}


def compute_unread(db: Session, user_id: int) -> UnreadSummary:
    """Recompute unread counts from first principles.

    Every conversation the user participates in is listed, including those
    with nothing unread, and the aggregate is the sum of the entries.
    """

    counts = unread_counts(db, user_id)
    conversations = {
        conversation_id: counts.get(conversation_id, 0)
        for conversation_id in _participating_ids(db, user_id)
    }
    return UnreadSummary(total=sum(conversations.values()), conversations=conversations)


def unread_message_ids(db: Session, user_id: int) -> dict[int, list[int]]:
    """Unread message ids grouped by conversation, used for idempotent client counters."""

    result: dict[int, list[int]] = {
        conversation_id: [] for conversation_id in _participating_ids(db, user_id)
    }
    stmt = (
        select(Message.conversation_id, Message.id)
        .where(*_unread_filter(user_id))
        .order_by(Message.conversation_id, Message.id)
    )
    for conversation_id, message_id in db.execute(stmt):
        if conversation_id in result:
            result[conversation_id].append(message_id)
    return result


def mark_read(
    db: Session,
    user_id: int,
    *,
    conversation_id: int | None = None,
    message_ids: Iterable[int] | None = None,
    now: datetime | None = None,
) -> list[MessageRead]:
    """Flip read flags for messages addressed to ``user_id``.

    Returns only the rows that transitioned, so calling it again for the same
    target returns an empty list and changes nothing.
    """

    ids = sorted(set(message_ids or ()))
    if conversation_id is None and not ids:
        raise InvalidArgument("Either conversation_id or message_ids must be provided")

    timestamp = now or utcnow()
    participant: ConversationParticipant | None = None
    if conversation_id is not None:
        if db.get(Conversation, conversation_id) is None:
            raise NotFound("Conversation not found")
        participant = db.execute(
            select(ConversationParticipant).where(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.user_id == user_id,
            )
        ).scalar_one_or_none()
        if participant is None:
            raise PermissionDenied("Not a participant of this conversation")

    stmt = select(Message).where(*_unread_filter(user_id))
    if conversation_id is not None:
        stmt = stmt.where(Message.conversation_id == conversation_id)
    if ids:
        stmt = stmt.where(Message.id.in_(ids))
    messages = db.execute(stmt.order_by(Message.created_at, Message.id)).scalars().all()

    for message in messages:
        message.read = True
        message.read_at = timestamp
    if participant is not None:
        participant.last_read_at = timestamp
    db.commit()

    if messages:
        logger.debug(
            "Marked messages read",
            extra={"user_id": user_id, "conversation_id": conversation_id, "count": len(messages)},
        )
    return [MessageRead.model_validate(message) for message in messages]
