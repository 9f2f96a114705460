"""Metric definitions for the realtime fan-out and unread accounting."""

from __future__ import annotations

from .registry import registry


realtime_events_total = registry.counter(
    "realtime_events_total",
    "Count of change events published or received over the push transport.",
    label_names=("topic", "direction", "event"),
)

realtime_publish_errors_total = registry.counter(
    "realtime_publish_errors_total",
    "Change events that could not be handed to the push transport.",
    label_names=("topic", "backend", "reason"),
)

realtime_subscriptions = registry.gauge(
    "realtime_subscriptions",
    "Number of active push transport subscriptions held by this node.",
    label_names=("topic", "backend"),
)

realtime_transport_restarts_total = registry.counter(
    "realtime_transport_restarts_total",
    "Number of times a transport backend client was rebuilt after a failure.",
    label_names=("backend", "reason"),
)

realtime_reconnects_total = registry.counter(
    "realtime_reconnects_total",
    "Inbox supervisor reconnect attempts by outcome.",
    label_names=("outcome",),
)

unread_reconcile_total = registry.counter(
    "unread_reconcile_total",
    "Full unread/notification reconciles run by inbox supervisors.",
    label_names=("outcome",),
)

unread_drift_total = registry.counter(
    "unread_drift_total",
    "Unread message ids corrected by a full reconcile.",
)

notifications_emitted_total = registry.counter(
    "notifications_emitted_total",
    "Notification rows created, by type.",
    label_names=("type",),
)


def topic_label(topic: str) -> str:
    """Collapse ``inbox:42`` into ``inbox`` to keep label cardinality bounded."""

    return topic.split(":", 1)[0]
