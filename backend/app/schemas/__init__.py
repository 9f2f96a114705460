"""Pydantic schemas for API payloads."""

from .conversations import (
    ConversationRead,
    ConversationSummary,
    ParticipantRead,
    ParticipantUpdate,
    ResolveConversationRequest,
)
from .messages import MarkReadRequest, MarkReadResult, MessageRead, UnreadSummary
from .notifications import (
    CleanupResult,
    NotificationPage,
    NotificationPreferences,
    NotificationPreferencesUpdate,
    NotificationRead,
    NotificationReadAllResult,
)
from .social import CommentCreate, CommentRead, FollowRead, LikeRead
from .users import PublicUser

__all__ = [
    "PublicUser",
    "ResolveConversationRequest",
    "ConversationRead",
    "ConversationSummary",
    "ParticipantRead",
    "ParticipantUpdate",
    "MessageRead",
    "MarkReadRequest",
    "MarkReadResult",
    "UnreadSummary",
    "NotificationRead",
    "NotificationPage",
    "NotificationPreferences",
    "NotificationPreferencesUpdate",
    "NotificationReadAllResult",
    "CleanupResult",
    "CommentCreate",
    "CommentRead",
    "FollowRead",
    "LikeRead",
]
