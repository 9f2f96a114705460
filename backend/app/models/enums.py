from __future__ import annotations

from enum import Enum


class NotificationType(str, Enum):
    """Kinds of triggering events that fan out a notification."""

    MESSAGE = "message"
    FOLLOW = "follow"
    LIKE = "like"
    COMMENT = "comment"


class MediaType(str, Enum):
    """Top-level MIME family of a message attachment."""

    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
