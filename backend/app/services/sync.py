"""Injected facade over the sync operations.

Each operation runs its store work in a worker thread with a bounded timeout
and publishes the resulting row changes once the write has committed.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Iterable, TypeVar

from fastapi import UploadFile
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker

from amply.realtime.managers import ChangeFeed
from amply.realtime.supervisor import InboxSnapshot

from app.config import Settings, get_settings
from app.core.storage import LocalMediaStore
from app.database import ABANDONED_KEY, get_db_session
from app.schemas import (
    CleanupResult,
    CommentRead,
    ConversationRead,
    ConversationSummary,
    FollowRead,
    LikeRead,
    MessageRead,
    NotificationPage,
    NotificationPreferences,
    NotificationPreferencesUpdate,
    NotificationRead,
    ParticipantRead,
    UnreadSummary,
)
from app.services import conversations, messages, notifications, social, unread
from app.services.errors import StoreUnavailable, SyncError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _load_snapshot(db: Session, user_id: int, limit: int) -> InboxSnapshot:
    page = notifications.fetch_notifications(db, user_id, limit=limit)
    return InboxSnapshot(
        unread=unread.unread_message_ids(db, user_id),
        muted=conversations.muted_conversation_ids(db, user_id),
        notifications=list(page.items),
        unread_notification_ids=notifications.unread_notification_ids(db, user_id),
        preferences=notifications.get_preferences(db, user_id).model_dump(),
    )


def _resolve(db: Session, user_id: int, other_id: int) -> ConversationRead:
    return ConversationRead.model_validate(
        conversations.resolve_conversation(db, user_id, other_id)
    )


class SocialSyncService:
    """Conversation, message, unread and notification operations for one process."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        change_feed: ChangeFeed,
        media_store: LocalMediaStore,
        settings: Settings | None = None,
        timeout: float | None = None,
        serialize: bool = False,
    ) -> None:
        self._session_factory = session_factory
        self._change_feed = change_feed
        self._media_store = media_store
        self._settings = settings or get_settings()
        if timeout is None:
            timeout = self._settings.store_operation_timeout_seconds
        self._timeout = timeout
        self._serial_lock = threading.Lock() if serialize else None

    @property
    def change_feed(self) -> ChangeFeed:
        return self._change_feed

    @property
    def media_store(self) -> LocalMediaStore:
        return self._media_store

    async def _run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        abandoned = threading.Event()

        def work() -> T:
            serial = self._serial_lock or contextlib.nullcontext()
            with serial, get_db_session(self._session_factory) as db:
                db.info[ABANDONED_KEY] = abandoned
                return fn(db, *args, **kwargs)

        worker = asyncio.ensure_future(asyncio.to_thread(work))
        try:
            return await asyncio.wait_for(asyncio.shield(worker), timeout=self._timeout)
        except asyncio.TimeoutError:
            # From here on the worker's commit is refused and its transaction
            # rolls back; wait for it so the caller learns the real outcome.
            abandoned.set()
            return await self._settle(fn.__name__, worker)
        except asyncio.CancelledError:
            abandoned.set()
            raise
        except DBAPIError as exc:
            logger.warning(
                "Store operation failed", exc_info=True, extra={"operation": fn.__name__}
            )
            raise StoreUnavailable() from exc

    async def _settle(self, operation: str, worker: asyncio.Future[T]) -> T:
        try:
            result = await asyncio.wait_for(asyncio.shield(worker), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            logger.error(
                "Abandoned store operation is still running",
                extra={"operation": operation, "timeout": self._timeout},
            )
            raise StoreUnavailable("Store operation timed out") from exc
        except (StoreUnavailable, DBAPIError) as exc:
            logger.warning(
                "Store operation timed out",
                extra={"operation": operation, "timeout": self._timeout},
            )
            raise StoreUnavailable("Store operation timed out") from exc
        logger.warning(
            "Store operation committed after its deadline",
            extra={"operation": operation, "timeout": self._timeout},
        )
        return result

    # ------------------------------------------------------------------
    # Conversation directory
    # ------------------------------------------------------------------
    async def resolve_conversation(self, user_id: int, other_id: int) -> ConversationRead:
        return await self._run(_resolve, user_id, other_id)

    async def list_conversations(self, user_id: int) -> list[ConversationSummary]:
        return await self._run(conversations.list_conversations, user_id)

    async def update_participant(
        self,
        conversation_id: int,
        user_id: int,
        *,
        is_muted: bool | None = None,
        is_archived: bool | None = None,
    ) -> ParticipantRead:
        return await self._run(
            conversations.update_participant,
            conversation_id,
            user_id,
            is_muted=is_muted,
            is_archived=is_archived,
        )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    async def send_message(
        self,
        conversation_id: int,
        sender_id: int,
        content: str | None,
        media: UploadFile | None = None,
    ) -> MessageRead:
        """Validate, upload the attachment, store the message, then fan it out.

        Nothing is kept if validation, the upload or the insert fails.
        """

        text = messages.validate_content(
            content,
            has_media=media is not None,
            max_length=self._settings.chat_message_max_length,
        )
        await self._run(messages.check_can_send, conversation_id, sender_id)

        media_ref: messages.MediaRef | None = None
        stored = None
        if media is not None:
            stored = await self._media_store.store(sender_id, media)
            media_ref = messages.MediaRef(url=stored.url, media_type=stored.media_type)

        try:
            message, notification = await self._run(
                messages.create_message, conversation_id, sender_id, text, media_ref
            )
        except SyncError:
            if stored is not None:
                self._media_store.discard(stored.relative_path)
            raise

        await self._change_feed.message_inserted(message)
        if notification is not None:
            await self._change_feed.notification_inserted(notification)
        return message

    async def fetch_messages(self, conversation_id: int, user_id: int) -> list[MessageRead]:
        return await self._run(messages.fetch_messages, conversation_id, user_id)

    async def fetch_thread(self, conversation_id: int, user_id: int) -> list[MessageRead]:
        return await self.fetch_messages(conversation_id, user_id)

    async def delete_message(self, message_id: int, requester_id: int) -> MessageRead:
        after, before = await self._run(messages.delete_message, message_id, requester_id)
        if after.is_deleted and not before.is_deleted:
            await self._change_feed.message_updated(after, before)
        return after

    # ------------------------------------------------------------------
    # Unread accounting
    # ------------------------------------------------------------------
    async def compute_unread(self, user_id: int) -> UnreadSummary:
        return await self._run(unread.compute_unread, user_id)

    async def mark_read(
        self,
        user_id: int,
        *,
        conversation_id: int | None = None,
        message_ids: Iterable[int] | None = None,
    ) -> list[MessageRead]:
        flipped = await self._run(
            unread.mark_read,
            user_id,
            conversation_id=conversation_id,
            message_ids=list(message_ids) if message_ids is not None else None,
        )
        for message in flipped:
            before = message.model_copy(update={"read": False, "read_at": None})
            await self._change_feed.message_updated(message, before)
        return flipped

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    async def fetch_notifications(
        self, user_id: int, *, limit: int | None = None, unread_only: bool = False
    ) -> NotificationPage:
        return await self._run(
            notifications.fetch_notifications,
            user_id,
            limit=limit or self._settings.notification_page_limit,
            unread_only=unread_only,
        )

    async def mark_notification_read(self, user_id: int, notification_id: int) -> NotificationRead:
        after, before = await self._run(
            notifications.mark_notification_read, user_id, notification_id
        )
        if before is not None:
            await self._change_feed.notification_updated(after, before)
        return after

    async def mark_all_notifications_read(self, user_id: int) -> list[NotificationRead]:
        flipped = await self._run(notifications.mark_all_notifications_read, user_id)
        for notification in flipped:
            before = notification.model_copy(update={"is_read": False, "read_at": None})
            await self._change_feed.notification_updated(notification, before)
        return flipped

    async def delete_notification(self, user_id: int, notification_id: int) -> NotificationRead:
        removed = await self._run(notifications.delete_notification, user_id, notification_id)
        await self._change_feed.notification_deleted(removed)
        return removed

    async def cleanup_notifications(self, now: datetime | None = None) -> CleanupResult:
        return await self._run(
            notifications.cleanup_notifications,
            now=now,
            auto_read_days=self._settings.notification_auto_read_days,
            retention_days=self._settings.notification_retention_days,
        )

    async def get_preferences(self, user_id: int) -> NotificationPreferences:
        return await self._run(notifications.get_preferences, user_id)

    async def update_preferences(
        self, user_id: int, changes: NotificationPreferencesUpdate
    ) -> NotificationPreferences:
        """Store new alert switches; open inboxes pick them up on their next reconcile."""

        return await self._run(notifications.update_preferences, user_id, changes)

    # ------------------------------------------------------------------
    # Social triggers
    # ------------------------------------------------------------------
    async def _fan_out(self, notification: NotificationRead | None) -> None:
        if notification is not None:
            await self._change_feed.notification_inserted(notification)

    async def follow_user(self, follower_id: int, following_id: int) -> FollowRead:
        follow, notification = await self._run(social.follow_user, follower_id, following_id)
        await self._fan_out(notification)
        return follow

    async def unfollow_user(self, follower_id: int, following_id: int) -> bool:
        return await self._run(social.unfollow_user, follower_id, following_id)

    async def like_post(self, user_id: int, post_id: int) -> LikeRead:
        like, notification = await self._run(social.like_post, user_id, post_id)
        await self._fan_out(notification)
        return like

    async def unlike_post(self, user_id: int, post_id: int) -> bool:
        return await self._run(social.unlike_post, user_id, post_id)

    async def add_comment(self, user_id: int, post_id: int, content: str) -> CommentRead:
        comment, notification = await self._run(social.add_comment, user_id, post_id, content)
        await self._fan_out(notification)
        return comment

    # ------------------------------------------------------------------
    # Supervisor backend
    # ------------------------------------------------------------------
    async def load_snapshot(self, user_id: int) -> InboxSnapshot:
        return await self._run(_load_snapshot, user_id, self._settings.notification_page_limit)
