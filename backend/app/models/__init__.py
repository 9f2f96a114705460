"""Database models package."""

from .base import Base
from .enums import MediaType, NotificationType
from .social import (
    Conversation,
    ConversationParticipant,
    Message,
    Notification,
    NotificationPreference,
    Post,
    PostComment,
    PostLike,
    User,
    UserFollow,
    pair_key,
)

__all__ = [
    "Base",
    "User",
    "Conversation",
    "ConversationParticipant",
    "Message",
    "Notification",
    "NotificationPreference",
    "UserFollow",
    "Post",
    "PostLike",
    "PostComment",
    "MediaType",
    "NotificationType",
    "pair_key",
]
