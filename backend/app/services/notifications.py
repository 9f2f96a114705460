"""Notification emission, read-state transitions and retention."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, event, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import Message, Notification, NotificationPreference, NotificationType, User
from app.models.base import utcnow
from app.monitoring.metrics import notifications_emitted_total
from app.schemas import (
    CleanupResult,
    NotificationPage,
    NotificationPreferences,
    NotificationPreferencesUpdate,
    NotificationRead,
)
from app.services.errors import NotFound, PermissionDenied

logger = logging.getLogger(__name__)

_PREVIEW_LENGTH = 100
_EMITTED_KEY = "emitted_notifications"


@dataclass(slots=True)
class NotificationDraft:
    """Content of a notification before it is addressed and stored."""

    type: NotificationType
    event_key: str
    title: str
    message: str
    action_url: str | None = None
    related_post_id: int | None = None


def _preview(text: str) -> str:
    text = text.strip()
    if len(text) <= _PREVIEW_LENGTH:
        return text
    return text[:_PREVIEW_LENGTH] + "..."


def message_draft(sender: User, message: Message) -> NotificationDraft:
    body = _preview(message.content) if message.content.strip() else "Sent an attachment"
    return NotificationDraft(
        type=NotificationType.MESSAGE,
        event_key=f"message:{message.id}",
        title=f"New message from {sender.display_name}",
        message=body,
        action_url=f"/messages/{message.conversation_id}",
    )


def follow_draft(actor: User, follow_id: int) -> NotificationDraft:
    return NotificationDraft(
        type=NotificationType.FOLLOW,
        event_key=f"follow:{follow_id}",
        title="New Follower",
        message=f"{actor.display_name} started following you",
        action_url=f"/profile/{actor.id}",
    )


def like_draft(actor: User, like_id: int, post_id: int) -> NotificationDraft:
    return NotificationDraft(
        type=NotificationType.LIKE,
        event_key=f"like:{like_id}",
        title="New Like",
        message=f"{actor.display_name} liked your post",
        action_url=f"/posts/{post_id}",
        related_post_id=post_id,
    )


def comment_draft(actor: User, comment_id: int, post_id: int, content: str) -> NotificationDraft:
    return NotificationDraft(
        type=NotificationType.COMMENT,
        event_key=f"comment:{comment_id}",
        title="New Comment",
        message=f"{actor.display_name} commented: {_preview(content)}",
        action_url=f"/posts/{post_id}",
        related_post_id=post_id,
    )


def _get_by_event_key(db: Session, event_key: str) -> Notification | None:
    stmt = select(Notification).where(Notification.event_key == event_key)
    return db.execute(stmt).scalar_one_or_none()




def emit_notification(
    db: Session, *, recipient_id: int, actor_id: int, draft: NotificationDraft
) -> tuple[NotificationRead | None, bool]:
    """Stage one notification for a triggering event in the caller's transaction.

    Returns ``(notification, created)``. Self-actions produce ``(None, False)``.
    A second call for the same ``event_key`` returns the stored row untouched.
    The row is flushed, not committed; it becomes visible together with the
    write that triggered it.
    """

    if recipient_id == actor_id:
        logger.debug(
            "Skipped self notification",
            extra={"user_id": actor_id, "event_key": draft.event_key},
        )
        return None, False

    existing = _get_by_event_key(db, draft.event_key)
    if existing is not None:
        return NotificationRead.model_validate(existing), False

    notification = Notification(
        user_id=recipient_id,
        type=draft.type,
        event_key=draft.event_key,
        title=draft.title,
        message=draft.message,
        related_user_id=actor_id,
        related_post_id=draft.related_post_id,
        action_url=draft.action_url,
    )
    db.add(notification)
    db.flush()
    db.info.setdefault(_EMITTED_KEY, []).append(
        (recipient_id, draft.type.value, draft.event_key)
    )
    return NotificationRead.model_validate(notification), True


@event.listens_for(Session, "after_commit")
def _count_committed_notifications(session: Session) -> None:
    for recipient_id, notification_type, event_key in session.info.pop(_EMITTED_KEY, ()):
        notifications_emitted_total.labels(notification_type).inc()
        logger.info(
            "Notification emitted",
            extra={"user_id": recipient_id, "type": notification_type, "event_key": event_key},
        )


@event.listens_for(Session, "after_rollback")
def _forget_rolled_back_notifications(session: Session) -> None:
    session.info.pop(_EMITTED_KEY, None)


def unread_notification_ids(db: Session, user_id: int) -> list[int]:
    stmt = (
        select(Notification.id)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
        .order_by(Notification.id)
    )
    return list(db.execute(stmt).scalars())


def fetch_notifications(
    db: Session, user_id: int, *, limit: int = 50, unread_only: bool = False
) -> NotificationPage:
    """Latest notifications for a user, newest first, with the unread total."""

    stmt = select(Notification).where(Notification.user_id == user_id)
    if unread_only:
        stmt = stmt.where(Notification.is_read.is_(False))
    stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)
    items = [NotificationRead.model_validate(row) for row in db.execute(stmt).scalars()]

    count_stmt = select(func.count(Notification.id)).where(
        Notification.user_id == user_id, Notification.is_read.is_(False)
    )
    unread = db.execute(count_stmt).scalar_one()
    return NotificationPage(items=items, unread_count=unread)


def get_preferences(db: Session, user_id: int) -> NotificationPreferences:
    stmt = select(NotificationPreference).where(NotificationPreference.user_id == user_id)
    row = db.execute(stmt).scalar_one_or_none()
    if row is None:
        return NotificationPreferences()
    return NotificationPreferences.model_validate(row)


def update_preferences(
    db: Session, user_id: int, changes: NotificationPreferencesUpdate
) -> NotificationPreferences:
    """Apply the provided switches, creating the user's row on first change."""

    if db.get(User, user_id) is None:
        raise NotFound("User not found")
    stmt = select(NotificationPreference).where(NotificationPreference.user_id == user_id)
    row = db.execute(stmt).scalar_one_or_none()
    if row is None:
        row = NotificationPreference(user_id=user_id)
        db.add(row)
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            row = db.execute(stmt).scalar_one()

    provided = changes.model_dump(exclude_none=True)
    for name, value in provided.items():
        setattr(row, name, value)
    db.commit()
    logger.info(
        "Notification preferences updated",
        extra={"user_id": user_id, "changed": sorted(provided)},
    )
    return NotificationPreferences.model_validate(row)


def _owned_notification(db: Session, user_id: int, notification_id: int) -> Notification:
    notification = db.get(Notification, notification_id)
    if notification is None:
        raise NotFound("Notification not found")
    if notification.user_id != user_id:
        raise PermissionDenied("Notification belongs to another user")
    return notification


def mark_notification_read(
    db: Session, user_id: int, notification_id: int
) -> tuple[NotificationRead, NotificationRead | None]:
    """Flip one notification to read.

    Returns ``(after, before)``; ``before`` is ``None`` when it was already read.
    """

    notification = _owned_notification(db, user_id, notification_id)
    if notification.is_read:
        return NotificationRead.model_validate(notification), None
    before = NotificationRead.model_validate(notification)
    notification.is_read = True
    notification.read_at = utcnow()
    db.commit()
    return NotificationRead.model_validate(notification), before


def mark_all_notifications_read(db: Session, user_id: int) -> list[NotificationRead]:
    """Mark every unread notification read and return the flipped rows."""

    stmt = select(Notification).where(
        Notification.user_id == user_id, Notification.is_read.is_(False)
    )
    rows = db.execute(stmt).scalars().all()
    timestamp = utcnow()
    for row in rows:
        row.is_read = True
        row.read_at = timestamp
    db.commit()
    return [NotificationRead.model_validate(row) for row in rows]


def delete_notification(db: Session, user_id: int, notification_id: int) -> NotificationRead:
    notification = _owned_notification(db, user_id, notification_id)
    snapshot = NotificationRead.model_validate(notification)
    db.delete(notification)
    db.commit()
    return snapshot


def cleanup_notifications(
    db: Session,
    *,
    now: datetime | None = None,
    auto_read_days: int = 30,
    retention_days: int = 90,
) -> CleanupResult:
    """Retention pass: age out unread notifications, then purge old read ones."""

    current = now or utcnow()
    read_cutoff = current - timedelta(days=auto_read_days)
    delete_cutoff = current - timedelta(days=retention_days)

    marked = db.execute(
        update(Notification)
        .where(Notification.is_read.is_(False), Notification.created_at < read_cutoff)
        .values(is_read=True, read_at=current)
        .execution_options(synchronize_session=False)
    ).rowcount
    deleted = db.execute(
        delete(Notification)
        .where(Notification.is_read.is_(True), Notification.created_at < delete_cutoff)
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()

    result = CleanupResult(marked_read=marked or 0, deleted=deleted or 0)
    logger.info(
        "Notification cleanup finished",
        extra={"marked_read": result.marked_read, "deleted": result.deleted},
    )
    return result
