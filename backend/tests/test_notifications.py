from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from app.models import Notification, NotificationType, PostComment
from app.monitoring.metrics import notifications_emitted_total
from app.schemas import NotificationPreferencesUpdate
from app.services import notifications, social
from app.services.errors import InvalidArgument, NotFound, PermissionDenied, StoreUnavailable
from app.services.notifications import NotificationDraft
from conftest import make_post, make_user


@pytest.fixture(autouse=True)
def reset_emitted_metric():
    notifications_emitted_total.clear()
    yield
    notifications_emitted_total.clear()


def _draft(key: str) -> NotificationDraft:
    return NotificationDraft(
        type=NotificationType.FOLLOW,
        event_key=key,
        title="New Follower",
        message="Alice started following you",
    )


def test_self_actions_never_notify(session_factory, db_session) -> None:
    alice = make_user(session_factory, "Alice")
    post_id = make_post(session_factory, alice)

    notification, created = notifications.emit_notification(
        db_session, recipient_id=alice, actor_id=alice, draft=_draft("follow:1")
    )
    _, like_notification = social.like_post(db_session, alice, post_id)
    _, comment_notification = social.add_comment(db_session, alice, post_id, "nice")

    assert notification is None and created is False
    assert like_notification is None
    assert comment_notification is None
    assert db_session.execute(select(Notification)).first() is None


def test_same_event_is_stored_once(session_factory, db_session) -> None:
    alice = make_user(session_factory, "Alice")
    bob = make_user(session_factory, "Bob")

    first, created = notifications.emit_notification(
        db_session, recipient_id=bob, actor_id=alice, draft=_draft("follow:7")
    )
    second, created_again = notifications.emit_notification(
        db_session, recipient_id=bob, actor_id=alice, draft=_draft("follow:7")
    )

    assert created is True and created_again is False
    assert first is not None and second is not None and first.id == second.id
    assert notifications_emitted_total.value("follow") == 0
    db_session.commit()
    assert notifications_emitted_total.value("follow") == 1


def test_social_actions_build_expected_content(session_factory, db_session) -> None:
    alice = make_user(session_factory, "Alice")
    bob = make_user(session_factory, "Bob")
    post_id = make_post(session_factory, bob)

    _, followed = social.follow_user(db_session, alice, bob)
    _, liked = social.like_post(db_session, alice, post_id)
    _, commented = social.add_comment(db_session, alice, post_id, "y" * 150)

    assert followed.title == "New Follower"
    assert followed.message == "Alice started following you"
    assert liked.title == "New Like"
    assert liked.related_post_id == post_id
    assert commented.title == "New Comment"
    assert commented.message == "Alice commented: " + "y" * 100 + "..."
    assert {followed.user_id, liked.user_id, commented.user_id} == {bob}


def test_repeated_follow_does_not_notify_twice(session_factory, db_session) -> None:
    alice = make_user(session_factory, "Alice")
    bob = make_user(session_factory, "Bob")

    first_follow, first = social.follow_user(db_session, alice, bob)
    second_follow, second = social.follow_user(db_session, alice, bob)

    assert first is not None
    assert second is None
    assert first_follow.id == second_follow.id
    with pytest.raises(InvalidArgument):
        social.follow_user(db_session, alice, alice)


def test_fetch_is_newest_first_with_unread_total(session_factory, db_session) -> None:
    alice = make_user(session_factory, "Alice")
    bob = make_user(session_factory, "Bob")
    for index in range(3):
        notifications.emit_notification(
            db_session, recipient_id=bob, actor_id=alice, draft=_draft(f"follow:{index}")
        )

    page = notifications.fetch_notifications(db_session, bob, limit=2)

    assert [item.event_key for item in page.items] == ["follow:2", "follow:1"]
    assert page.unread_count == 3


def test_mark_read_transitions_once(session_factory, db_session) -> None:
    alice = make_user(session_factory, "Alice")
    bob = make_user(session_factory, "Bob")
    created, _ = notifications.emit_notification(
        db_session, recipient_id=bob, actor_id=alice, draft=_draft("follow:1")
    )

    after, before = notifications.mark_notification_read(db_session, bob, created.id)
    again, before_again = notifications.mark_notification_read(db_session, bob, created.id)

    assert before is not None and before.is_read is False
    assert after.is_read is True and after.read_at is not None
    assert again.is_read is True and before_again is None
    with pytest.raises(PermissionDenied):
        notifications.mark_notification_read(db_session, alice, created.id)
    with pytest.raises(NotFound):
        notifications.mark_notification_read(db_session, bob, created.id + 10)


def test_mark_all_and_delete(session_factory, db_session) -> None:
    alice = make_user(session_factory, "Alice")
    bob = make_user(session_factory, "Bob")
    for index in range(2):
        notifications.emit_notification(
            db_session, recipient_id=bob, actor_id=alice, draft=_draft(f"follow:{index}")
        )

    flipped = notifications.mark_all_notifications_read(db_session, bob)
    assert len(flipped) == 2
    assert notifications.mark_all_notifications_read(db_session, bob) == []

    removed = notifications.delete_notification(db_session, bob, flipped[0].id)
    assert removed.id == flipped[0].id
    assert len(notifications.fetch_notifications(db_session, bob).items) == 1


def test_cleanup_ages_out_and_purges(session_factory, db_session) -> None:
    alice = make_user(session_factory, "Alice")
    bob = make_user(session_factory, "Bob")
    now = datetime(2026, 6, 1, tzinfo=timezone.utc)
    rows = {
        "fresh": (now - timedelta(days=1), False),
        "stale-unread": (now - timedelta(days=45), False),
        "old-read": (now - timedelta(days=120), True),
        "recent-read": (now - timedelta(days=10), True),
    }
    for key, (created_at, is_read) in rows.items():
        db_session.add(
            Notification(
                user_id=bob,
                type=NotificationType.LIKE,
                event_key=key,
                title="New Like",
                message="Alice liked your post",
                related_user_id=alice,
                is_read=is_read,
                created_at=created_at,
            )
        )
    db_session.commit()

    result = notifications.cleanup_notifications(
        db_session, now=now, auto_read_days=30, retention_days=90
    )

    assert result.marked_read == 1
    assert result.deleted == 1
    remaining = {
        row.event_key: row.is_read for row in db_session.execute(select(Notification)).scalars()
    }
    assert remaining == {"fresh": False, "stale-unread": True, "recent-read": True}


def test_retried_comment_is_stored_once_with_its_notification(
    session_factory, monkeypatch
) -> None:
    alice = make_user(session_factory, "Alice")
    bob = make_user(session_factory, "Bob")
    post_id = make_post(session_factory, bob)
    original = social.emit_notification
    calls = []

    def flaky_emit(*args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            raise StoreUnavailable()
        return original(*args, **kwargs)

    monkeypatch.setattr(social, "emit_notification", flaky_emit)

    with session_factory() as session:
        with pytest.raises(StoreUnavailable):
            social.add_comment(session, alice, post_id, "first try")
    with session_factory() as session:
        social.add_comment(session, alice, post_id, "first try")

    with session_factory() as session:
        assert session.execute(select(func.count(PostComment.id))).scalar_one() == 1
        assert session.execute(select(func.count(Notification.id))).scalar_one() == 1
    assert notifications_emitted_total.value("comment") == 1


@pytest.mark.anyio("asyncio")
async def test_inbox_snapshot_carries_alert_preferences(session_factory, sync_service) -> None:
    alice = make_user(session_factory, "Alice")

    before = await sync_service.load_snapshot(alice)
    await sync_service.update_preferences(
        alice, NotificationPreferencesUpdate(messages=False, push_notifications=True)
    )
    after = await sync_service.load_snapshot(alice)

    assert all(before.preferences.values())
    assert after.preferences["messages"] is False
    assert after.preferences["comments"] is True


def test_preferences_for_unknown_user_are_rejected(db_session) -> None:
    with pytest.raises(NotFound):
        notifications.update_preferences(
            db_session, 999, NotificationPreferencesUpdate(likes=False)
        )
