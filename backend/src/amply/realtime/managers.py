"""Process-wide realtime wiring: transport, change-feed publisher and supervisors."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from app.config import get_settings
from app.monitoring.metrics import (
    realtime_events_total,
    realtime_publish_errors_total,
    topic_label,
)

from .events import (
    MESSAGE_INSERTED,
    MESSAGE_UPDATED,
    NOTIFICATION_DELETED,
    NOTIFICATION_INSERTED,
    NOTIFICATION_UPDATED,
    build_change_payload,
    conversation_topic,
    inbox_topic,
)
from .supervisor import InboxBackend, InboxSupervisor, Sink
from .transport import BrokerConfig, RedisNATSTransport, TransportUnavailableError

logger = logging.getLogger(__name__)


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Send JSON through a websocket, returning ``False`` if it is already gone."""

    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("Failed to send websocket message: %s", e)
        return False


class ChangeFeed:
    """Publishes row changes to the recipient's topics after the write committed.

    A failed publish never fails the write that caused it; subscribers heal
    on their next reconcile.
    """

    def __init__(
        self,
        transport: RedisNATSTransport,
        *,
        node_id: str | None,
        backend: str | None,
    ) -> None:
        self._transport = transport
        self._node_id = node_id
        self._backend = backend
        self._publish_warning_logged = False

    async def _publish(self, topics: list[str], payload: dict[str, Any]) -> None:
        event_type = payload["event_type"]
        for topic in topics:
            try:
                await self._transport.publish(topic, payload, backend=self._backend)
            except TransportUnavailableError as exc:
                realtime_publish_errors_total.labels(
                    topic_label(topic), self._backend or "default", "unavailable"
                ).inc()
                if not self._publish_warning_logged:
                    logger.warning(
                        "Realtime backend unavailable while publishing %s; "
                        "clients will catch up on reconcile",
                        event_type,
                        exc_info=logger.isEnabledFor(logging.DEBUG),
                        extra={"topic": topic, "error": str(exc)},
                    )
                    self._publish_warning_logged = True
                continue
            realtime_events_total.labels(topic_label(topic), "outbound", event_type).inc()
            self._publish_warning_logged = False

    async def message_inserted(self, message: Any) -> None:
        await self._publish(
            [inbox_topic(message.receiver_id), conversation_topic(message.conversation_id)],
            build_change_payload(MESSAGE_INSERTED, row_after=message, origin=self._node_id),
        )

    async def message_updated(self, message: Any, before: Any = None) -> None:
        await self._publish(
            [inbox_topic(message.receiver_id), conversation_topic(message.conversation_id)],
            build_change_payload(
                MESSAGE_UPDATED, row_after=message, row_before=before, origin=self._node_id
            ),
        )

    async def notification_inserted(self, notification: Any) -> None:
        await self._publish(
            [inbox_topic(notification.user_id)],
            build_change_payload(
                NOTIFICATION_INSERTED, row_after=notification, origin=self._node_id
            ),
        )

    async def notification_updated(self, notification: Any, before: Any = None) -> None:
        await self._publish(
            [inbox_topic(notification.user_id)],
            build_change_payload(
                NOTIFICATION_UPDATED,
                row_after=notification,
                row_before=before,
                origin=self._node_id,
            ),
        )

    async def notification_deleted(self, notification: Any) -> None:
        await self._publish(
            [inbox_topic(notification.user_id)],
            build_change_payload(
                NOTIFICATION_DELETED, row_before=notification, origin=self._node_id
            ),
        )


# ---------------------------------------------------------------------------
# Module level lifecycle helpers
# ---------------------------------------------------------------------------


settings = get_settings()

_node_id = settings.realtime_node_id or uuid.uuid4().hex

transport = RedisNATSTransport(
    BrokerConfig(
        redis_url=settings.realtime_redis_url,
        nats_url=settings.realtime_nats_url,
        prefix=settings.realtime_namespace,
        node_id=_node_id,
        backend_preference=settings.realtime_backend_preference,
    )
)

change_feed = ChangeFeed(transport, node_id=_node_id, backend=settings.realtime_backend_preference)


async def startup_realtime() -> None:
    try:
        await transport.start()
    except (TransportUnavailableError, OSError, ConnectionError):
        logger.warning(
            "Realtime backend unavailable during startup; subscriptions will retry",
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )


async def shutdown_realtime() -> None:
    await transport.stop()


def get_transport() -> RedisNATSTransport:
    return transport


def get_change_feed() -> ChangeFeed:
    return change_feed


def create_inbox_supervisor(user_id: int, backend: InboxBackend, sink: Sink) -> InboxSupervisor:
    """Build a supervisor for one live session using the configured reconnect policy."""

    return InboxSupervisor(
        user_id,
        transport,
        backend,
        sink,
        backend_name=settings.realtime_backend_preference,
        base_delay=settings.realtime_reconnect_base_delay_seconds,
        max_delay=settings.realtime_reconnect_max_delay_seconds,
        max_attempts=settings.realtime_reconnect_max_attempts,
        reconcile_interval=settings.realtime_reconcile_interval_seconds,
        notification_limit=settings.notification_page_limit,
    )


__all__ = [
    "ChangeFeed",
    "safe_send_json",
    "startup_realtime",
    "shutdown_realtime",
    "get_transport",
    "get_change_feed",
    "create_inbox_supervisor",
]
