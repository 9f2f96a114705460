"""HTTP endpoints for conversations, direct messages and unread counts."""

from __future__ import annotations

from fastapi import APIRouter, Depends, File, Form, UploadFile, status

from app.api.deps import get_current_user_id, get_sync_service
from app.schemas import (
    ConversationRead,
    ConversationSummary,
    MarkReadRequest,
    MarkReadResult,
    MessageRead,
    ParticipantRead,
    ParticipantUpdate,
    ResolveConversationRequest,
    UnreadSummary,
)
from app.services.sync import SocialSyncService

router = APIRouter(tags=["conversations"])


def _read_result(messages: list[MessageRead]) -> MarkReadResult:
    return MarkReadResult(updated=len(messages), message_ids=[message.id for message in messages])


@router.post("/conversations/resolve", response_model=ConversationRead)
async def resolve_conversation(
    payload: ResolveConversationRequest,
    user_id: int = Depends(get_current_user_id),
    service: SocialSyncService = Depends(get_sync_service),
) -> ConversationRead:
    """Return the conversation with another user, creating it on first contact."""

    return await service.resolve_conversation(user_id, payload.other_user_id)


@router.get("/conversations", response_model=list[ConversationSummary])
async def list_conversations(
    user_id: int = Depends(get_current_user_id),
    service: SocialSyncService = Depends(get_sync_service),
) -> list[ConversationSummary]:
    return await service.list_conversations(user_id)


@router.get("/conversations/{conversation_id}/messages", response_model=list[MessageRead])
async def list_messages(
    conversation_id: int,
    user_id: int = Depends(get_current_user_id),
    service: SocialSyncService = Depends(get_sync_service),
) -> list[MessageRead]:
    return await service.fetch_messages(conversation_id, user_id)


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=MessageRead,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    conversation_id: int,
    content: str = Form(""),
    file: UploadFile | None = File(default=None),
    user_id: int = Depends(get_current_user_id),
    service: SocialSyncService = Depends(get_sync_service),
) -> MessageRead:
    """Send a text message and/or a single media attachment."""

    return await service.send_message(conversation_id, user_id, content, file)


@router.patch("/conversations/{conversation_id}/participant", response_model=ParticipantRead)
async def update_participant(
    conversation_id: int,
    payload: ParticipantUpdate,
    user_id: int = Depends(get_current_user_id),
    service: SocialSyncService = Depends(get_sync_service),
) -> ParticipantRead:
    return await service.update_participant(
        conversation_id,
        user_id,
        is_muted=payload.is_muted,
        is_archived=payload.is_archived,
    )


@router.post("/conversations/{conversation_id}/read", response_model=MarkReadResult)
async def mark_conversation_read(
    conversation_id: int,
    user_id: int = Depends(get_current_user_id),
    service: SocialSyncService = Depends(get_sync_service),
) -> MarkReadResult:
    return _read_result(await service.mark_read(user_id, conversation_id=conversation_id))


@router.post("/messages/read", response_model=MarkReadResult)
async def mark_messages_read(
    payload: MarkReadRequest,
    user_id: int = Depends(get_current_user_id),
    service: SocialSyncService = Depends(get_sync_service),
) -> MarkReadResult:
    flipped = await service.mark_read(
        user_id,
        conversation_id=payload.conversation_id,
        message_ids=payload.message_ids,
    )
    return _read_result(flipped)


@router.delete("/messages/{message_id}", response_model=MessageRead)
async def delete_message(
    message_id: int,
    user_id: int = Depends(get_current_user_id),
    service: SocialSyncService = Depends(get_sync_service),
) -> MessageRead:
    """Soft-delete a message sent by the caller."""

    return await service.delete_message(message_id, user_id)


@router.get("/unread", response_model=UnreadSummary)
async def unread_summary(
    user_id: int = Depends(get_current_user_id),
    service: SocialSyncService = Depends(get_sync_service),
) -> UnreadSummary:
    return await service.compute_unread(user_id)
