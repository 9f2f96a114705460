from __future__ import annotations

import asyncio
from typing import Any, Iterable

import pytest

from amply.realtime.events import (
    MESSAGE_INSERTED,
    MESSAGE_UPDATED,
    NOTIFICATION_INSERTED,
    NOTIFICATION_UPDATED,
    build_change_payload,
)
from amply.realtime.managers import ChangeFeed
from amply.realtime.supervisor import InboxSnapshot, InboxSupervisor, SubscriptionState
from amply.realtime.transport import BrokerConfig, RedisNATSTransport, TransportUnavailableError
from app.monitoring.metrics import realtime_reconnects_total, unread_drift_total
from app.schemas import MessageRead
from app.services.errors import StoreUnavailable, SyncError
from conftest import drop_local_streams

USER_ID = 2
PEER_ID = 1


class FlakyTransport(RedisNATSTransport):
    """Local transport whose subscribe can be switched off to simulate an outage."""

    def __init__(self) -> None:
        super().__init__(BrokerConfig(backend_preference="local"))
        self.offline = False

    async def subscribe(self, topic, handler, *, backend=None, on_interrupted=None):
        if self.offline:
            raise TransportUnavailableError("offline")
        return await super().subscribe(
            topic, handler, backend=backend, on_interrupted=on_interrupted
        )


class FakeBackend:
    """In-memory stand-in for the store side of the sync service."""

    def __init__(self) -> None:
        self.unread: dict[int, list[int]] = {}
        self.muted: set[int] = set()
        self.notifications: list[dict[str, Any]] = []
        self.unread_notification_ids: list[int] = []
        self.preferences: dict[str, bool] = {}
        self.threads: dict[int, list[dict[str, Any]]] = {}
        self.mark_read_calls: list[dict[str, Any]] = []
        self.snapshot_error: SyncError | None = None
        self.send_error: SyncError | None = None
        self.snapshot_read = asyncio.Event()
        self.snapshot_gate: asyncio.Event | None = None
        self._next_id = 100

    async def load_snapshot(self, user_id: int) -> InboxSnapshot:
        if self.snapshot_error is not None:
            raise self.snapshot_error
        snapshot = InboxSnapshot(
            unread={cid: list(ids) for cid, ids in self.unread.items()},
            muted=set(self.muted),
            notifications=list(self.notifications),
            unread_notification_ids=list(self.unread_notification_ids),
            preferences=dict(self.preferences),
        )
        self.snapshot_read.set()
        if self.snapshot_gate is not None:
            await self.snapshot_gate.wait()
        return snapshot

    async def fetch_thread(self, conversation_id: int, user_id: int) -> list[dict[str, Any]]:
        return list(self.threads.get(conversation_id, []))

    async def mark_read(
        self,
        user_id: int,
        *,
        conversation_id: int | None = None,
        message_ids: Iterable[int] | None = None,
    ) -> list[dict[str, Any]]:
        ids = list(message_ids or ())
        self.mark_read_calls.append({"conversation_id": conversation_id, "message_ids": ids})
        if conversation_id is not None:
            self.unread[conversation_id] = []
        for bucket in self.unread.values():
            bucket[:] = [mid for mid in bucket if mid not in ids]
        return []

    async def send_message(self, conversation_id, sender_id, content, media=None):
        if self.send_error is not None:
            raise self.send_error
        self._next_id += 1
        return _message(self._next_id, conversation_id, sender=sender_id, receiver=PEER_ID, content=content)


def _message(
    message_id: int,
    conversation_id: int,
    *,
    sender: int = PEER_ID,
    receiver: int = USER_ID,
    content: str = "hi",
    minute: int = 0,
    **flags: Any,
) -> dict[str, Any]:
    return {
        "id": message_id,
        "conversation_id": conversation_id,
        "sender_id": sender,
        "receiver_id": receiver,
        "content": content,
        "read": False,
        "is_deleted": False,
        "created_at": f"2026-01-01T00:{minute:02d}:00+00:00",
        **flags,
    }


def _notification(notification_id: int, *, kind: str = "like", is_read: bool = False) -> dict[str, Any]:
    return {
        "id": notification_id,
        "user_id": USER_ID,
        "type": kind,
        "event_key": f"{kind}:{notification_id}",
        "title": "New Like",
        "message": "Alice liked your post",
        "is_read": is_read,
        "created_at": "2026-01-01T00:00:00+00:00",
    }


class Frames(list):
    async def __call__(self, frame: dict[str, Any]) -> None:
        self.append(frame)

    def of(self, kind: str) -> list[dict[str, Any]]:
        return [frame for frame in self if frame["type"] == kind]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture(autouse=True)
def reset_supervisor_metrics():
    realtime_reconnects_total.clear()
    unread_drift_total.clear()
    yield
    realtime_reconnects_total.clear()
    unread_drift_total.clear()


@pytest.fixture()
def transport() -> FlakyTransport:
    return FlakyTransport()


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def frames() -> Frames:
    return Frames()


@pytest.fixture()
def make_supervisor(transport, backend, frames):
    created: list[InboxSupervisor] = []

    def factory(**overrides: Any) -> InboxSupervisor:
        options = {
            "backend_name": "local",
            "base_delay": 0.01,
            "max_delay": 0.05,
            "max_attempts": 5,
            "reconcile_interval": None,
        }
        options.update(overrides)
        supervisor = InboxSupervisor(USER_ID, transport, backend, frames, **options)
        created.append(supervisor)
        return supervisor

    yield factory


@pytest.mark.anyio("asyncio")
async def test_start_reconciles_before_incremental_updates(make_supervisor, backend, frames):
    backend.unread = {7: [1, 2], 8: []}
    backend.notifications = [_notification(50)]
    backend.unread_notification_ids = [50]
    supervisor = make_supervisor()

    await supervisor.start()

    assert supervisor.state is SubscriptionState.CONNECTED
    assert [frame["state"] for frame in frames.of("connection")] == ["connecting", "connected"]
    assert frames.of("unread")[-1] == {"type": "unread", "total": 2, "conversations": {7: 2, 8: 0}}
    assert frames.of("notifications")[-1]["unread_count"] == 1
    await supervisor.stop()
    assert frames.of("connection")[-1] == {
        "type": "connection",
        "state": "disconnected",
        "attempt": 0,
        "terminal": True,
    }


@pytest.mark.anyio("asyncio")
async def test_duplicate_insert_is_counted_once(make_supervisor, frames):
    supervisor = make_supervisor()
    await supervisor.start()
    payload = build_change_payload(MESSAGE_INSERTED, row_after=_message(10, 7))

    await supervisor.handle(payload)
    await supervisor.handle(payload)

    assert supervisor.counters.total == 1
    assert frames.of("unread")[-1]["total"] == 1
    alerts = frames.of("alert")
    assert len(alerts) == 1
    assert alerts[0]["conversation_id"] == 7 and alerts[0]["preview"] == "hi"
    await supervisor.stop()


@pytest.mark.anyio("asyncio")
async def test_own_messages_and_muted_conversations_do_not_alert(make_supervisor, backend, frames):
    backend.muted = {9}
    supervisor = make_supervisor()
    await supervisor.start()

    await supervisor.handle(
        build_change_payload(MESSAGE_INSERTED, row_after=_message(11, 7, sender=USER_ID, receiver=PEER_ID))
    )
    await supervisor.handle(build_change_payload(MESSAGE_INSERTED, row_after=_message(12, 9)))

    assert supervisor.counters.count(7) == 0
    assert supervisor.counters.count(9) == 1
    assert frames.of("alert") == []
    await supervisor.stop()


@pytest.mark.anyio("asyncio")
async def test_read_transition_decrements_once(make_supervisor, backend):
    backend.unread = {7: [10, 11]}
    supervisor = make_supervisor()
    await supervisor.start()
    update = build_change_payload(
        MESSAGE_UPDATED,
        row_after=_message(10, 7, read=True),
        row_before=_message(10, 7),
    )

    await supervisor.handle(update)
    await supervisor.handle(update)

    assert supervisor.counters.count(7) == 1
    await supervisor.stop()


@pytest.mark.anyio("asyncio")
async def test_notification_read_twice_decrements_once(make_supervisor, backend, frames):
    backend.notifications = [_notification(50), _notification(51)]
    backend.unread_notification_ids = [50, 51]
    supervisor = make_supervisor()
    await supervisor.start()
    update = build_change_payload(
        NOTIFICATION_UPDATED,
        row_after=_notification(50, is_read=True),
        row_before=_notification(50),
    )

    await supervisor.handle(update)
    await supervisor.handle(update)

    assert supervisor.feed.unread_count == 1
    assert len([f for f in frames.of("notification") if f["action"] == "read"]) == 1
    await supervisor.stop()


@pytest.mark.anyio("asyncio")
async def test_message_notifications_do_not_alert_twice(make_supervisor, frames):
    supervisor = make_supervisor()
    await supervisor.start()

    await supervisor.handle(
        build_change_payload(NOTIFICATION_INSERTED, row_after=_notification(60, kind="message"))
    )
    await supervisor.handle(build_change_payload(NOTIFICATION_INSERTED, row_after=_notification(61)))

    assert supervisor.feed.unread_count == 2
    assert [alert["kind"] for alert in frames.of("alert")] == ["like"]
    await supervisor.stop()


@pytest.mark.anyio("asyncio")
async def test_missed_events_are_recovered_by_reconcile(make_supervisor, transport, backend):
    backend.unread = {7: [1]}
    supervisor = make_supervisor(max_attempts=50)
    await supervisor.start()
    feed = ChangeFeed(transport, node_id="test", backend="local")

    await feed.message_inserted(MessageRead(**_message(2, 7)))
    await wait_until(lambda: supervisor.counters.total == 2)

    transport.offline = True
    drop_local_streams(transport)
    await wait_until(lambda: supervisor.state is SubscriptionState.RECONNECTING)

    # Two messages arrive while the push stream is down.
    backend.unread = {7: [1, 2, 3], 8: [4]}
    await feed.message_inserted(MessageRead(**_message(3, 7)))
    await feed.message_inserted(MessageRead(**_message(4, 8)))
    await asyncio.sleep(0.05)
    assert supervisor.counters.total == 2

    transport.offline = False
    await wait_until(lambda: supervisor.state is SubscriptionState.CONNECTED)
    await wait_until(lambda: supervisor.counters.total == 4)

    assert supervisor.counters.snapshot() == {"total": 4, "conversations": {7: 3, 8: 1}}
    assert realtime_reconnects_total.value("success") == 1
    assert realtime_reconnects_total.value("failure") >= 1
    assert unread_drift_total.value() == 2
    await supervisor.stop()


@pytest.mark.anyio("asyncio")
async def test_reconnect_gives_up_after_max_attempts(make_supervisor, transport, frames):
    supervisor = make_supervisor(max_attempts=2)
    await supervisor.start()

    transport.offline = True
    drop_local_streams(transport)
    await wait_until(lambda: frames.of("connection")[-1]["terminal"] is True)

    assert supervisor.state is SubscriptionState.DISCONNECTED
    assert realtime_reconnects_total.value("failure") == 2
    assert realtime_reconnects_total.value("exhausted") == 1
    await supervisor.stop()


@pytest.mark.anyio("asyncio")
async def test_failed_reconcile_keeps_incremental_state(make_supervisor, backend):
    supervisor = make_supervisor()
    await supervisor.start()
    await supervisor.handle(build_change_payload(MESSAGE_INSERTED, row_after=_message(10, 7)))
    backend.snapshot_error = StoreUnavailable()

    assert await supervisor.reconcile() is False
    assert supervisor.counters.total == 1
    await supervisor.stop()


@pytest.mark.anyio("asyncio")
async def test_open_thread_marks_read_and_follows_new_messages(make_supervisor, backend, frames):
    backend.unread = {7: [1, 2]}
    backend.threads = {7: [_message(2, 7, minute=2), _message(1, 7, minute=1)]}
    supervisor = make_supervisor()
    await supervisor.start()

    view = await supervisor.open_thread(7)

    assert [row.id for row in view.messages] == [1, 2]
    assert backend.mark_read_calls[-1] == {"conversation_id": 7, "message_ids": []}
    assert supervisor.counters.count(7) == 0
    assert frames.of("thread")[-1]["conversation_id"] == 7

    await supervisor.handle(build_change_payload(MESSAGE_INSERTED, row_after=_message(3, 7, minute=3)))

    assert [row.id for row in supervisor.thread.messages] == [1, 2, 3]
    assert frames.of("thread_message")[-1]["message"]["id"] == 3
    assert backend.mark_read_calls[-1] == {"conversation_id": None, "message_ids": [3]}
    assert supervisor.counters.count(7) == 0
    assert frames.of("alert") == []
    await supervisor.stop()


@pytest.mark.anyio("asyncio")
async def test_failed_send_keeps_compose_content(make_supervisor, backend, frames):
    backend.threads = {7: []}
    supervisor = make_supervisor()
    await supervisor.start()
    await supervisor.open_thread(7)
    backend.send_error = StoreUnavailable()

    result = await supervisor.send_message(7, "draft text", client_id="c-1")

    assert result is None
    failure = frames.of("message_failed")[-1]
    assert failure["client_id"] == "c-1"
    assert failure["content"] == "draft text"
    assert failure["code"] == "store_unavailable"
    assert failure["retryable"] is True
    assert supervisor.thread.pending[0].status == "failed"
    await supervisor.stop()


@pytest.mark.anyio("asyncio")
async def test_successful_send_replaces_pending_entry(make_supervisor, backend, frames):
    backend.threads = {7: []}
    supervisor = make_supervisor()
    await supervisor.start()
    await supervisor.open_thread(7)

    row = await supervisor.send_message(7, "hello", client_id="c-2")

    assert row is not None and row.content == "hello"
    assert supervisor.thread.pending == []
    assert [message.id for message in supervisor.thread.messages] == [row.id]
    assert frames.of("message_sent")[-1]["client_id"] == "c-2"
    await supervisor.stop()



@pytest.mark.anyio("asyncio")
async def test_event_during_snapshot_load_survives_reconcile(make_supervisor, backend):
    supervisor = make_supervisor()
    await supervisor.start()
    backend.snapshot_read.clear()
    backend.snapshot_gate = asyncio.Event()

    reconcile = asyncio.create_task(supervisor.reconcile())
    await backend.snapshot_read.wait()
    # The stored snapshot predates this message.
    handled = asyncio.create_task(
        supervisor.handle(build_change_payload(MESSAGE_INSERTED, row_after=_message(5, 7)))
    )
    await asyncio.sleep(0.01)
    backend.snapshot_gate.set()

    assert await reconcile is True
    await handled
    assert supervisor.counters.total == 1
    assert supervisor.counters.count(7) == 1
    await supervisor.stop()


@pytest.mark.anyio("asyncio")
async def test_disabled_alert_types_stay_silent(make_supervisor, backend, frames):
    backend.preferences = {"push_notifications": True, "messages": False, "likes": False}
    supervisor = make_supervisor()
    await supervisor.start()

    await supervisor.handle(build_change_payload(MESSAGE_INSERTED, row_after=_message(10, 7)))
    await supervisor.handle(build_change_payload(NOTIFICATION_INSERTED, row_after=_notification(61)))
    await supervisor.handle(
        build_change_payload(NOTIFICATION_INSERTED, row_after=_notification(62, kind="comment"))
    )

    assert supervisor.counters.total == 1
    assert supervisor.feed.unread_count == 2
    assert [alert["kind"] for alert in frames.of("alert")] == ["comment"]
    await supervisor.stop()


@pytest.mark.anyio("asyncio")
async def test_push_switch_silences_every_alert(make_supervisor, backend, frames):
    backend.preferences = {"push_notifications": False}
    supervisor = make_supervisor()
    await supervisor.start()

    await supervisor.handle(build_change_payload(MESSAGE_INSERTED, row_after=_message(10, 7)))
    await supervisor.handle(
        build_change_payload(NOTIFICATION_INSERTED, row_after=_notification(63, kind="follow"))
    )

    assert supervisor.counters.total == 1
    assert frames.of("alert") == []
    await supervisor.stop()
