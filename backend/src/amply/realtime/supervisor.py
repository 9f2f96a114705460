"""Inbox supervisor: owns one session's push subscriptions and derived state."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Protocol
from uuid import uuid4

from app.monitoring.metrics import (
    realtime_events_total,
    realtime_reconnects_total,
    topic_label,
    unread_drift_total,
    unread_reconcile_total,
)
from app.services.errors import SyncError

from .events import (
    ChangeEvent,
    MessageInserted,
    MessageRow,
    MessageUpdated,
    NotificationDeleted,
    NotificationInserted,
    NotificationRow,
    NotificationUpdated,
    conversation_topic,
    inbox_topic,
    parse_change_event,
)
from .inbox import NotificationFeed, ThreadView, UnreadCounters
from .transport import RedisNATSTransport, Subscription, TransportUnavailableError

logger = logging.getLogger(__name__)

Sink = Callable[[dict[str, Any]], Awaitable[Any]]

_PREVIEW_LENGTH = 100

# Notification type to the preference switch that gates its alerts.
_ALERT_SWITCHES = {
    "message": "messages",
    "follow": "followers",
    "like": "likes",
    "comment": "comments",
}


class SubscriptionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass(slots=True)
class InboxSnapshot:
    """Authoritative per-user state loaded from the store on reconcile."""

    unread: dict[int, list[int]] = field(default_factory=dict)
    muted: set[int] = field(default_factory=set)
    notifications: list[Any] = field(default_factory=list)
    unread_notification_ids: list[int] = field(default_factory=list)
    preferences: dict[str, bool] = field(default_factory=dict)


class InboxBackend(Protocol):
    """Store operations the supervisor needs; implemented by the sync service."""

    async def load_snapshot(self, user_id: int) -> InboxSnapshot: ...

    async def fetch_thread(self, conversation_id: int, user_id: int) -> list[Any]: ...

    async def mark_read(
        self,
        user_id: int,
        *,
        conversation_id: int | None = None,
        message_ids: Iterable[int] | None = None,
    ) -> list[Any]: ...

    async def send_message(
        self,
        conversation_id: int,
        sender_id: int,
        content: str,
        media: Any | None = None,
    ) -> Any: ...


def _preview(text: str) -> str:
    return text if len(text) <= _PREVIEW_LENGTH else text[:_PREVIEW_LENGTH] + "..."


class InboxSupervisor:
    """Subscribes a session to its inbox and keeps counters, feed and thread current.

    The push transport keeps no history, so every entry into ``connected``
    (the first one included) runs a full reconcile against the store. Between
    reconciles, change events update the local state incrementally.
    """

    def __init__(
        self,
        user_id: int,
        transport: RedisNATSTransport,
        backend: InboxBackend,
        sink: Sink,
        *,
        backend_name: str | None = None,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
        max_attempts: int = 8,
        reconcile_interval: float | None = 60.0,
        notification_limit: int = 50,
    ) -> None:
        self.user_id = user_id
        self._transport = transport
        self._backend = backend
        self._sink = sink
        self._backend_name = backend_name
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._max_attempts = max_attempts
        self._reconcile_interval = reconcile_interval

        self.counters = UnreadCounters()
        self.feed = NotificationFeed(limit=notification_limit)
        self.thread: ThreadView | None = None
        self.muted: set[int] = set()
        self.preferences: dict[str, bool] = {}

        self._state = SubscriptionState.DISCONNECTED
        self._inbox_subscription: Subscription | None = None
        self._thread_subscription: Subscription | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._periodic_task: asyncio.Task[None] | None = None
        self._attempt = 0
        self._stopping = False
        self._reconciled = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> SubscriptionState:
        return self._state

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        self._stopping = False
        await self._set_state(SubscriptionState.CONNECTING)
        try:
            await self._subscribe_all()
        except TransportUnavailableError:
            logger.warning(
                "Inbox subscription failed; retrying", extra={"user_id": self.user_id}
            )
            await self._close_subscriptions()
            await self._begin_reconnect("subscribe_failed")
            return
        await self._enter_connected()

    async def stop(self) -> None:
        self._stopping = True
        for task in (self._reconnect_task, self._periodic_task):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._reconnect_task = None
        self._periodic_task = None
        await self._close_subscriptions()
        self.thread = None
        await self._set_state(SubscriptionState.DISCONNECTED, terminal=True)

    async def _subscribe_all(self) -> None:
        self._inbox_subscription = await self._transport.subscribe(
            inbox_topic(self.user_id),
            self.handle,
            backend=self._backend_name,
            on_interrupted=self._on_interrupted,
        )
        if self.thread is not None:
            self._thread_subscription = await self._transport.subscribe(
                conversation_topic(self.thread.conversation_id),
                self.handle,
                backend=self._backend_name,
                on_interrupted=self._on_interrupted,
            )

    async def _close_subscriptions(self) -> None:
        for subscription in (self._inbox_subscription, self._thread_subscription):
            if subscription is not None:
                await subscription.close()
        self._inbox_subscription = None
        self._thread_subscription = None

    async def _enter_connected(self) -> None:
        self._attempt = 0
        await self._set_state(SubscriptionState.CONNECTED)
        await self.reconcile()
        periodic_idle = self._periodic_task is None or self._periodic_task.done()
        if self._reconcile_interval and periodic_idle:
            self._periodic_task = asyncio.create_task(
                self._periodic_reconcile(), name=f"inbox-reconcile-{self.user_id}"
            )

    async def _on_interrupted(self, reason: str) -> None:
        if self._stopping or self._state is not SubscriptionState.CONNECTED:
            return
        logger.warning(
            "Inbox subscription interrupted", extra={"user_id": self.user_id, "reason": reason}
        )
        await self._close_subscriptions()
        await self._begin_reconnect(reason)

    async def _begin_reconnect(self, reason: str) -> None:
        await self._set_state(SubscriptionState.RECONNECTING)
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(
                self._reconnect_runner(reason), name=f"inbox-reconnect-{self.user_id}"
            )

    def _delay(self, attempt: int) -> float:
        return min(self._base_delay * (2**attempt), self._max_delay)

    async def _reconnect_runner(self, reason: str) -> None:
        while not self._stopping:
            if self._attempt >= self._max_attempts:
                realtime_reconnects_total.labels("exhausted").inc()
                logger.error(
                    "Inbox reconnect attempts exhausted",
                    extra={"user_id": self.user_id, "attempts": self._attempt, "reason": reason},
                )
                await self._close_subscriptions()
                await self._set_state(SubscriptionState.DISCONNECTED, terminal=True)
                return
            await asyncio.sleep(self._delay(self._attempt))
            self._attempt += 1
            try:
                await self._subscribe_all()
            except TransportUnavailableError:
                realtime_reconnects_total.labels("failure").inc()
                await self._close_subscriptions()
                logger.info(
                    "Inbox reconnect attempt failed",
                    extra={"user_id": self.user_id, "attempt": self._attempt},
                )
                await self._emit_state()
                continue
            realtime_reconnects_total.labels("success").inc()
            logger.info(
                "Inbox subscription restored",
                extra={"user_id": self.user_id, "attempt": self._attempt},
            )
            await self._enter_connected()
            return

    async def _periodic_reconcile(self) -> None:
        interval = float(self._reconcile_interval or 0)
        while not self._stopping and interval > 0:
            await asyncio.sleep(interval)
            if self._state is SubscriptionState.CONNECTED:
                await self.reconcile()

    async def _set_state(self, state: SubscriptionState, *, terminal: bool = False) -> None:
        if self._state is state and not terminal:
            return
        self._state = state
        await self._emit_state(terminal=terminal)

    async def _emit_state(self, *, terminal: bool = False) -> None:
        await self._emit(
            {
                "type": "connection",
                "state": self._state.value,
                "attempt": self._attempt,
                "terminal": terminal,
            }
        )

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------
    async def reconcile(self) -> bool:
        """Replace incremental state with the store's view; drift is healed, not reported."""

        async with self._lock:
            try:
                snapshot = await self._backend.load_snapshot(self.user_id)
            except SyncError as exc:
                unread_reconcile_total.labels("failure").inc()
                logger.warning(
                    "Inbox reconcile failed; keeping incremental state",
                    extra={"user_id": self.user_id, "code": exc.code},
                )
                return False

            drift = self.counters.replace(snapshot.unread)
            drift += self.feed.replace(
                (NotificationRow.model_validate(item) for item in snapshot.notifications),
                snapshot.unread_notification_ids,
            )
            self.muted = set(snapshot.muted)
            self.preferences = dict(snapshot.preferences)
            unread_reconcile_total.labels("success").inc()
            # The first load establishes the baseline; only later disagreement is drift.
            if drift and self._reconciled:
                unread_drift_total.inc(drift)
                logger.info(
                    "Inbox reconcile corrected drift",
                    extra={"user_id": self.user_id, "drift": drift},
                )
            self._reconciled = True

        if self.thread is not None:
            await self._refresh_thread(self.thread.conversation_id)
        await self._emit_unread()
        await self._emit({"type": "notifications", **self.feed.snapshot()})
        return True

    async def _refresh_thread(self, conversation_id: int) -> None:
        try:
            rows = await self._backend.fetch_thread(conversation_id, self.user_id)
            await self._backend.mark_read(self.user_id, conversation_id=conversation_id)
        except SyncError as exc:
            logger.warning(
                "Could not refresh open thread",
                extra={
                    "user_id": self.user_id,
                    "conversation_id": conversation_id,
                    "code": exc.code,
                },
            )
            return
        if self.thread is None or self.thread.conversation_id != conversation_id:
            return
        self.thread.load(MessageRow.model_validate(row) for row in rows)
        self.counters.clear_conversation(conversation_id)
        await self._emit_thread()

    # ------------------------------------------------------------------
    # Change events
    # ------------------------------------------------------------------
    async def handle(self, payload: dict[str, Any]) -> None:
        event = parse_change_event(payload)
        if event is None:
            return
        event_type = payload.get("event_type", "unknown")
        realtime_events_total.labels("inbox", "inbound", event_type).inc()

        # Serialized with reconcile so a snapshot never overwrites a newer event.
        async with self._lock:
            await self._apply(event)

    async def _apply(self, event: ChangeEvent) -> None:
        if isinstance(event, MessageInserted):
            await self._on_message_inserted(event.row)
        elif isinstance(event, MessageUpdated):
            await self._on_message_updated(event.row)
        elif isinstance(event, NotificationInserted):
            await self._on_notification_inserted(event.row)
        elif isinstance(event, NotificationUpdated):
            await self._on_notification_updated(event)
        elif isinstance(event, NotificationDeleted):
            await self._on_notification_deleted(event.row)

    def _thread_open_for(self, conversation_id: int) -> bool:
        return self.thread is not None and self.thread.conversation_id == conversation_id

    def _alerts_enabled(self, kind: str) -> bool:
        if not self.preferences.get("push_notifications", True):
            return False
        switch = _ALERT_SWITCHES.get(kind)
        return switch is None or self.preferences.get(switch, True)

    async def _on_message_inserted(self, row: MessageRow) -> None:
        if self.user_id not in (row.sender_id, row.receiver_id):
            return
        thread = self.thread
        if thread is not None and thread.conversation_id == row.conversation_id:
            if thread.upsert(row):
                await self._emit({"type": "thread_message", "message": row.model_dump(mode="json")})

        if row.receiver_id != self.user_id or row.read or row.is_deleted:
            return
        if self._thread_open_for(row.conversation_id):
            try:
                await self._backend.mark_read(self.user_id, message_ids=[row.id])
                return
            except SyncError:
                logger.warning(
                    "Could not mark open-thread message read",
                    extra={"user_id": self.user_id, "message_id": row.id},
                )
        if self.counters.add(row.conversation_id, row.id):
            await self._emit_unread()
            if row.conversation_id not in self.muted and self._alerts_enabled("message"):
                await self._emit(
                    {
                        "type": "alert",
                        "kind": "message",
                        "conversation_id": row.conversation_id,
                        "message_id": row.id,
                        "preview": _preview(row.content) if row.content else "Sent an attachment",
                    }
                )

    async def _on_message_updated(self, row: MessageRow) -> None:
        if self.user_id not in (row.sender_id, row.receiver_id):
            return
        thread = self.thread
        if thread is not None and thread.conversation_id == row.conversation_id:
            if thread.upsert(row):
                await self._emit({"type": "thread_message", "message": row.model_dump(mode="json")})
        if row.receiver_id == self.user_id and (row.read or row.is_deleted):
            if self.counters.discard(row.id, row.conversation_id):
                await self._emit_unread()

    async def _on_notification_inserted(self, row: NotificationRow) -> None:
        if row.user_id != self.user_id:
            return
        if not self.feed.prepend(row):
            return
        await self._emit(
            {
                "type": "notification",
                "action": "inserted",
                "notification": row.model_dump(mode="json"),
                "unread_count": self.feed.unread_count,
            }
        )
        # Message notifications already alerted through message.inserted.
        if row.type != "message" and not row.is_read and self._alerts_enabled(row.type):
            await self._emit(
                {
                    "type": "alert",
                    "kind": row.type,
                    "title": row.title,
                    "message": row.message,
                    "action_url": row.action_url,
                }
            )

    async def _on_notification_updated(self, event: NotificationUpdated) -> None:
        row = event.row
        if row.user_id != self.user_id:
            return
        if event.became_read and self.feed.mark_read(row):
            await self._emit(
                {
                    "type": "notification",
                    "action": "read",
                    "notification": row.model_dump(mode="json"),
                    "unread_count": self.feed.unread_count,
                }
            )

    async def _on_notification_deleted(self, row: NotificationRow) -> None:
        if row.user_id != self.user_id:
            return
        if self.feed.remove(row.id):
            await self._emit(
                {
                    "type": "notification",
                    "action": "deleted",
                    "notification": row.model_dump(mode="json"),
                    "unread_count": self.feed.unread_count,
                }
            )

    # ------------------------------------------------------------------
    # Client actions
    # ------------------------------------------------------------------
    async def open_thread(self, conversation_id: int) -> ThreadView:
        """Show a conversation: load it, mark it read and follow its topic."""

        if self.thread is not None:
            await self.close_thread()
        rows = await self._backend.fetch_thread(conversation_id, self.user_id)
        view = ThreadView(conversation_id)
        view.load(MessageRow.model_validate(row) for row in rows)
        self.thread = view

        if self._state is SubscriptionState.CONNECTED:
            try:
                self._thread_subscription = await self._transport.subscribe(
                    conversation_topic(conversation_id),
                    self.handle,
                    backend=self._backend_name,
                    on_interrupted=self._on_interrupted,
                )
            except TransportUnavailableError:
                logger.warning(
                    "Conversation subscription failed; relying on inbox topic",
                    extra={"user_id": self.user_id, "conversation_id": conversation_id},
                )

        await self._backend.mark_read(self.user_id, conversation_id=conversation_id)
        self.counters.clear_conversation(conversation_id)
        await self._emit_thread()
        await self._emit_unread()
        return view

    async def close_thread(self) -> None:
        if self._thread_subscription is not None:
            await self._thread_subscription.close()
            self._thread_subscription = None
        self.thread = None

    async def send_message(
        self,
        conversation_id: int,
        content: str,
        *,
        client_id: str | None = None,
        media: Any | None = None,
    ) -> MessageRow | None:
        """Optimistically send a message; the authoritative row replaces the pending one."""

        client_id = client_id or uuid4().hex
        view = self.thread if self._thread_open_for(conversation_id) else None
        if view is not None:
            view.add_pending(client_id, content)
        try:
            message = await self._backend.send_message(
                conversation_id, self.user_id, content, media
            )
        except SyncError as exc:
            if view is not None:
                view.fail(client_id, exc.code, retryable=exc.retryable)
            await self._emit(
                {
                    "type": "message_failed",
                    "client_id": client_id,
                    "conversation_id": conversation_id,
                    "content": content,
                    "code": exc.code,
                    "detail": exc.detail,
                    "retryable": exc.retryable,
                }
            )
            return None

        row = MessageRow.model_validate(message)
        if view is not None and self.thread is view:
            view.confirm(client_id, row)
        await self._emit(
            {"type": "message_sent", "client_id": client_id, "message": row.model_dump(mode="json")}
        )
        return row

    async def mark_read(
        self,
        *,
        conversation_id: int | None = None,
        message_ids: Iterable[int] | None = None,
    ) -> list[MessageRow]:
        ids = list(message_ids or ())
        rows = await self._backend.mark_read(
            self.user_id, conversation_id=conversation_id, message_ids=ids or None
        )
        flipped = [MessageRow.model_validate(row) for row in rows]
        for row in flipped:
            self.counters.discard(row.id, row.conversation_id)
        for message_id in ids:
            self.counters.discard(message_id)
        if conversation_id is not None:
            self.counters.clear_conversation(conversation_id)
        await self._emit_unread()
        return flipped

    # ------------------------------------------------------------------
    # Frames
    # ------------------------------------------------------------------
    async def _emit_unread(self) -> None:
        await self._emit({"type": "unread", **self.counters.snapshot()})

    async def _emit_thread(self) -> None:
        if self.thread is None:
            return
        await self._emit(
            {
                "type": "thread",
                "conversation_id": self.thread.conversation_id,
                "messages": [row.model_dump(mode="json") for row in self.thread.messages],
                "pending": [pending.as_dict() for pending in self.thread.pending],
            }
        )

    async def _emit(self, frame: dict[str, Any]) -> None:
        try:
            await self._sink(frame)
        except Exception:
            logger.debug(
                "Dropped inbox frame", exc_info=True, extra={"frame_type": frame.get("type")}
            )
        else:
            realtime_events_total.labels(
                topic_label(inbox_topic(self.user_id)), "outbound", frame.get("type", "unknown")
            ).inc()
