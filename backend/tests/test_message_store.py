from __future__ import annotations

from datetime import datetime, timedelta, timezone
import time
from io import BytesIO

import pytest
from fastapi import UploadFile
from sqlalchemy import func, select
from starlette.datastructures import Headers

from app.models import Conversation, MediaType, Message, Notification
from app.services import messages
from app.services.errors import (
    InvalidArgument,
    MediaUploadFailed,
    NotFound,
    PermissionDenied,
    StoreUnavailable,
)
from app.services.sync import SocialSyncService
from conftest import make_conversation, make_user


def _upload(data: bytes, *, filename: str = "photo.png", content_type: str = "image/png") -> UploadFile:
    return UploadFile(
        file=BytesIO(data),
        filename=filename,
        headers=Headers({"content-type": content_type}),
    )


def _message_count(session_factory) -> int:
    with session_factory() as session:
        return session.execute(select(func.count(Message.id))).scalar_one()


def test_validate_content_requires_text_or_media() -> None:
    with pytest.raises(InvalidArgument):
        messages.validate_content("   ", has_media=False, max_length=10)
    assert messages.validate_content("  hi  ", has_media=False, max_length=10) == "hi"
    assert messages.validate_content(None, has_media=True, max_length=10) == ""
    with pytest.raises(InvalidArgument):
        messages.validate_content("x" * 11, has_media=False, max_length=10)


def test_create_message_targets_other_participant(session_factory, db_session) -> None:
    alice = make_user(session_factory, "Alice")
    bob = make_user(session_factory, "Bob")
    conversation_id = make_conversation(session_factory, alice, bob)
    stamp = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    message, _ = messages.create_message(db_session, conversation_id, alice, "hi", now=stamp)

    assert message.receiver_id == bob
    assert message.read is False
    assert message.read_at is None
    conversation = db_session.get(Conversation, conversation_id)
    assert conversation.updated_at.replace(tzinfo=timezone.utc) == stamp


def test_outsider_cannot_send(session_factory, db_session) -> None:
    alice = make_user(session_factory, "Alice")
    bob = make_user(session_factory, "Bob")
    carol = make_user(session_factory, "Carol")
    conversation_id = make_conversation(session_factory, alice, bob)

    with pytest.raises(PermissionDenied):
        messages.create_message(db_session, conversation_id, carol, "hello")
    assert _message_count(session_factory) == 0


def test_fetch_orders_by_creation_then_id(session_factory, db_session) -> None:
    alice = make_user(session_factory, "Alice")
    bob = make_user(session_factory, "Bob")
    conversation_id = make_conversation(session_factory, alice, bob)
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def send(sender: int, text: str, days: int):
        stamp = base + timedelta(days)
        return messages.create_message(db_session, conversation_id, sender, text, now=stamp)[0]

    late = send(alice, "t2", 2)
    early = send(bob, "t1", 1)
    latest = send(alice, "t3", 3)
    tie = send(bob, "t3b", 3)

    fetched = messages.fetch_messages(db_session, conversation_id, alice)

    assert [row.id for row in fetched] == [early.id, late.id, latest.id, tie.id]
    assert [row.content for row in fetched] == ["t1", "t2", "t3", "t3b"]


def test_delete_is_sender_only_and_hides_message(session_factory, db_session) -> None:
    alice = make_user(session_factory, "Alice")
    bob = make_user(session_factory, "Bob")
    conversation_id = make_conversation(session_factory, alice, bob)
    message, _ = messages.create_message(db_session, conversation_id, alice, "oops")

    with pytest.raises(PermissionDenied):
        messages.delete_message(db_session, message.id, bob)
    with pytest.raises(NotFound):
        messages.delete_message(db_session, message.id + 100, alice)

    after, before = messages.delete_message(db_session, message.id, alice)

    assert before.is_deleted is False
    assert after.is_deleted is True
    assert messages.fetch_messages(db_session, conversation_id, bob) == []


@pytest.mark.anyio("asyncio")
async def test_first_contact_text_then_photo(session_factory, sync_service) -> None:
    alice = make_user(session_factory, "Alice")
    bob = make_user(session_factory, "Bob")

    conversation = await sync_service.resolve_conversation(alice, bob)
    text = await sync_service.send_message(conversation.id, alice, "hi")
    photo = await sync_service.send_message(conversation.id, alice, "", _upload(b"\x89PNG data"))

    with session_factory() as session:
        assert session.execute(select(func.count(Conversation.id))).scalar_one() == 1
    thread = await sync_service.fetch_messages(conversation.id, bob)
    assert [row.id for row in thread] == [text.id, photo.id]
    assert photo.media_type is MediaType.IMAGE
    assert photo.media_url and photo.media_url.startswith("/api/media/user_")

    unread = await sync_service.compute_unread(bob)
    assert unread.total == 2
    assert unread.conversations == {conversation.id: 2}

    page = await sync_service.fetch_notifications(bob)
    assert [item.message for item in page.items] == ["Sent an attachment", "hi"]
    assert all(item.title == "New message from Alice" for item in page.items)
    assert page.unread_count == 2


@pytest.mark.anyio("asyncio")
async def test_reading_thread_only_clears_reader_counts(session_factory, sync_service) -> None:
    alice = make_user(session_factory, "Alice")
    bob = make_user(session_factory, "Bob")
    conversation = await sync_service.resolve_conversation(alice, bob)
    await sync_service.send_message(conversation.id, alice, "hi")
    await sync_service.send_message(conversation.id, alice, "there")
    await sync_service.send_message(conversation.id, bob, "hey")

    flipped = await sync_service.mark_read(bob, conversation_id=conversation.id)

    assert len(flipped) == 2
    assert all(row.read and row.read_at is not None for row in flipped)
    assert (await sync_service.compute_unread(bob)).total == 0
    alice_unread = await sync_service.compute_unread(alice)
    assert alice_unread.conversations == {conversation.id: 1}


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize(
    "upload",
    [
        lambda: _upload(b"%PDF", filename="doc.pdf", content_type="application/pdf"),
        lambda: _upload(b"x" * 4096),
        lambda: _upload(b""),
    ],
    ids=["unsupported-type", "too-large", "empty"],
)
async def test_failed_upload_stores_nothing(session_factory, sync_service, upload) -> None:
    alice = make_user(session_factory, "Alice")
    bob = make_user(session_factory, "Bob")
    conversation = await sync_service.resolve_conversation(alice, bob)

    with pytest.raises(MediaUploadFailed) as exc_info:
        await sync_service.send_message(conversation.id, alice, "look at this", upload())

    assert exc_info.value.code == "media_upload_failed"
    assert _message_count(session_factory) == 0
    with session_factory() as session:
        assert session.execute(select(func.count(Notification.id))).scalar_one() == 0


@pytest.mark.anyio("asyncio")
async def test_outsider_upload_is_rejected_before_storing(
    session_factory, sync_service, media_store
) -> None:
    alice = make_user(session_factory, "Alice")
    bob = make_user(session_factory, "Bob")
    carol = make_user(session_factory, "Carol")
    conversation = await sync_service.resolve_conversation(alice, bob)

    with pytest.raises(PermissionDenied):
        await sync_service.send_message(conversation.id, carol, "", _upload(b"data"))

    assert not (media_store._root / f"user_{carol}").exists()


def _notification_count(session_factory) -> int:
    with session_factory() as session:
        return session.execute(select(func.count(Notification.id))).scalar_one()


@pytest.mark.anyio("asyncio")
async def test_write_past_deadline_is_rolled_back(
    session_factory, sync_service, media_store, monkeypatch
) -> None:
    alice = make_user(session_factory, "Alice")
    bob = make_user(session_factory, "Bob")
    conversation_id = make_conversation(session_factory, alice, bob)
    service = SocialSyncService(
        session_factory,
        change_feed=sync_service.change_feed,
        media_store=media_store,
        timeout=0.2,
        serialize=True,
    )
    original = messages.create_message

    def slow_create(*args, **kwargs):
        time.sleep(0.3)
        return original(*args, **kwargs)

    monkeypatch.setattr(messages, "create_message", slow_create)

    with pytest.raises(StoreUnavailable) as exc_info:
        await service.send_message(conversation_id, alice, "too slow")

    assert exc_info.value.retryable is True
    assert _message_count(session_factory) == 0
    assert _notification_count(session_factory) == 0


@pytest.mark.anyio("asyncio")
async def test_failed_insert_removes_uploaded_attachment(
    session_factory, sync_service, media_store, monkeypatch
) -> None:
    alice = make_user(session_factory, "Alice")
    bob = make_user(session_factory, "Bob")
    conversation = await sync_service.resolve_conversation(alice, bob)

    def failing_create(*args, **kwargs):
        raise StoreUnavailable()

    monkeypatch.setattr(messages, "create_message", failing_create)

    with pytest.raises(StoreUnavailable):
        await sync_service.send_message(conversation.id, alice, "", _upload(b"\x89PNG data"))

    owner_dir = media_store._root / f"user_{alice}"
    assert not owner_dir.exists() or list(owner_dir.iterdir()) == []


@pytest.mark.anyio("asyncio")
async def test_retry_after_failed_notification_stores_message_once(
    session_factory, sync_service, monkeypatch
) -> None:
    alice = make_user(session_factory, "Alice")
    bob = make_user(session_factory, "Bob")
    conversation = await sync_service.resolve_conversation(alice, bob)
    original = messages.emit_notification
    calls = []

    def flaky_emit(*args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            raise StoreUnavailable()
        return original(*args, **kwargs)

    monkeypatch.setattr(messages, "emit_notification", flaky_emit)

    with pytest.raises(StoreUnavailable):
        await sync_service.send_message(conversation.id, alice, "hello")
    assert _message_count(session_factory) == 0

    await sync_service.send_message(conversation.id, alice, "hello")

    assert _message_count(session_factory) == 1
    assert _notification_count(session_factory) == 1
