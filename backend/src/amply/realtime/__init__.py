"""Realtime fan-out: push transport, change events and per-session supervisors."""

from .events import (  # noqa: F401
    ChangeEvent,
    MessageInserted,
    MessageRow,
    MessageUpdated,
    NotificationDeleted,
    NotificationInserted,
    NotificationRow,
    NotificationUpdated,
    build_change_payload,
    conversation_topic,
    inbox_topic,
    parse_change_event,
)
from .inbox import NotificationFeed, ThreadView, UnreadCounters  # noqa: F401
from .supervisor import (  # noqa: F401
    InboxBackend,
    InboxSnapshot,
    InboxSupervisor,
    SubscriptionState,
)
from .transport import (  # noqa: F401
    BrokerConfig,
    RedisNATSTransport,
    Subscription,
    TransportUnavailableError,
)

__all__ = [
    "BrokerConfig",
    "RedisNATSTransport",
    "Subscription",
    "TransportUnavailableError",
    "ChangeEvent",
    "MessageInserted",
    "MessageUpdated",
    "NotificationInserted",
    "NotificationUpdated",
    "NotificationDeleted",
    "MessageRow",
    "NotificationRow",
    "build_change_payload",
    "parse_change_event",
    "inbox_topic",
    "conversation_topic",
    "UnreadCounters",
    "ThreadView",
    "NotificationFeed",
    "InboxBackend",
    "InboxSnapshot",
    "InboxSupervisor",
    "SubscriptionState",
]
