"""Conversation directory: one canonical conversation per user pair."""

from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.models import Conversation, ConversationParticipant, Message, User, pair_key
from app.schemas import ConversationSummary, MessageRead, ParticipantRead, PublicUser
from app.services.errors import (
    ConflictRetry,
    InvalidArgument,
    NotFound,
    PermissionDenied,
    StoreUnavailable,
)
from app.services.unread import unread_counts

logger = logging.getLogger(__name__)

_RESOLVE_ATTEMPTS = 3


def find_conversation(db: Session, user_id: int, other_id: int) -> Conversation | None:
    """Return the conversation whose members are exactly ``{user_id, other_id}``.

    Participants that are missing from an otherwise matching conversation are
    restored so callers never observe an incomplete member set.
    """

    stmt = (
        select(Conversation)
        .where(Conversation.pair_key == pair_key(user_id, other_id))
        .options(selectinload(Conversation.participants))
    )
    conversation = db.execute(stmt).scalar_one_or_none()
    if conversation is None:
        return None

    expected = {user_id, other_id}
    members = conversation.member_ids()
    if members - expected:
        logger.error(
            "Conversation has unexpected participants",
            extra={"conversation_id": conversation.id, "participants": sorted(members)},
        )
        return None
    missing = expected - members
    if missing:
        for candidate in sorted(missing):
            conversation.participants.append(ConversationParticipant(user_id=candidate))
        db.commit()
        logger.warning(
            "Restored missing conversation participants",
            extra={"conversation_id": conversation.id, "restored": sorted(missing)},
        )
    return conversation


def _insert_conversation(db: Session, user_id: int, other_id: int) -> Conversation:
    low, high = sorted((user_id, other_id))
    conversation = Conversation(pair_key=pair_key(low, high))
    conversation.participants = [
        ConversationParticipant(user_id=low),
        ConversationParticipant(user_id=high),
    ]
    db.add(conversation)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictRetry("Conversation was created concurrently") from exc
    logger.info(
        "Conversation created",
        extra={"conversation_id": conversation.id, "participants": [low, high]},
    )
    return conversation


def resolve_conversation(db: Session, user_id: int, other_id: int) -> Conversation:
    """Map a pair of users to their canonical conversation, creating it if absent.

    The conversation row and both participant rows are written in a single
    transaction. Losing a race against a concurrent creator trips the unique
    pair key; the loser rolls back and re-resolves to the winner's row.
    """

    if user_id == other_id:
        raise InvalidArgument("Cannot open a conversation with yourself")
    for candidate in (user_id, other_id):
        if db.get(User, candidate) is None:
            raise NotFound("User not found")

    for attempt in range(1, _RESOLVE_ATTEMPTS + 1):
        conversation = find_conversation(db, user_id, other_id)
        if conversation is not None:
            return conversation
        try:
            return _insert_conversation(db, user_id, other_id)
        except ConflictRetry:
            logger.info(
                "Conversation insert lost a race; re-resolving",
                extra={"pair": pair_key(user_id, other_id), "attempt": attempt},
            )
    raise StoreUnavailable("Could not resolve conversation")


def get_conversation(db: Session, conversation_id: int) -> Conversation:
    stmt = (
        select(Conversation)
        .where(Conversation.id == conversation_id)
        .options(selectinload(Conversation.participants))
    )
    conversation = db.execute(stmt).scalar_one_or_none()
    if conversation is None:
        raise NotFound("Conversation not found")
    return conversation


def require_participant(
    db: Session, conversation_id: int, user_id: int
) -> tuple[Conversation, ConversationParticipant]:
    """Load a conversation and the caller's membership, or fail."""

    conversation = get_conversation(db, conversation_id)
    for participant in conversation.participants:
        if participant.user_id == user_id:
            return conversation, participant
    raise PermissionDenied("Not a participant of this conversation")


def other_participant_id(conversation: Conversation, user_id: int) -> int:
    for participant in conversation.participants:
        if participant.user_id != user_id:
            return participant.user_id
    raise NotFound("Conversation has no other participant")


def update_participant(
    db: Session,
    conversation_id: int,
    user_id: int,
    *,
    is_muted: bool | None = None,
    is_archived: bool | None = None,
) -> ParticipantRead:
    _, participant = require_participant(db, conversation_id, user_id)
    if is_muted is not None:
        participant.is_muted = is_muted
    if is_archived is not None:
        participant.is_archived = is_archived
    db.commit()
    db.refresh(participant)
    return ParticipantRead.model_validate(participant)


def muted_conversation_ids(db: Session, user_id: int) -> set[int]:
    stmt = select(ConversationParticipant.conversation_id).where(
        ConversationParticipant.user_id == user_id,
        ConversationParticipant.is_muted.is_(True),
    )
    return set(db.execute(stmt).scalars())


def _last_messages(db: Session, conversation_ids: list[int]) -> dict[int, Message]:
    """Newest visible message per conversation, fetched in one ranked query."""

    if not conversation_ids:
        return {}
    ranked = (
        select(
            Message.id,
            func.row_number()
            .over(
                partition_by=Message.conversation_id,
                order_by=(Message.created_at.desc(), Message.id.desc()),
            )
            .label("position"),
        )
        .where(Message.conversation_id.in_(conversation_ids), Message.is_deleted.is_(False))
        .subquery()
    )
    stmt = select(Message).join(ranked, ranked.c.id == Message.id).where(ranked.c.position == 1)
    return {message.conversation_id: message for message in db.execute(stmt).scalars()}


def list_conversations(db: Session, user_id: int) -> list[ConversationSummary]:
    """Return the caller's conversations, most recently active first."""

    stmt = (
        select(Conversation)
        .join(ConversationParticipant, ConversationParticipant.conversation_id == Conversation.id)
        .where(ConversationParticipant.user_id == user_id)
        .options(
            selectinload(Conversation.participants).selectinload(ConversationParticipant.user)
        )
        .order_by(Conversation.updated_at.desc(), Conversation.id.desc())
    )
    conversations = db.execute(stmt).scalars().unique().all()
    counts = unread_counts(db, user_id)
    last_messages = _last_messages(db, [conversation.id for conversation in conversations])

    summaries: list[ConversationSummary] = []
    for conversation in conversations:
        own = next(p for p in conversation.participants if p.user_id == user_id)
        other = next((p.user for p in conversation.participants if p.user_id != user_id), None)
        last_message = last_messages.get(conversation.id)
        summaries.append(
            ConversationSummary(
                id=conversation.id,
                updated_at=conversation.updated_at,
                other_user=PublicUser.model_validate(other) if other is not None else None,
                last_message=MessageRead.model_validate(last_message) if last_message else None,
                unread_count=counts.get(conversation.id, 0),
                is_muted=own.is_muted,
                is_archived=own.is_archived,
            )
        )
    return summaries
