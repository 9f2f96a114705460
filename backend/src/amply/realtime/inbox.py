"""Per-session state derived from the store and kept current by change events."""

from __future__ import annotations

import bisect
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Mapping

from .events import MessageRow, NotificationRow


class UnreadCounters:
    """Unread message ids keyed by conversation.

    Counting ids instead of integers makes every update idempotent: the same
    message delivered twice is counted once and a second read transition for
    it has nothing left to subtract.
    """

    def __init__(self) -> None:
        self._ids: dict[int, set[int]] = {}

    def add(self, conversation_id: int, message_id: int) -> bool:
        bucket = self._ids.setdefault(conversation_id, set())
        if message_id in bucket:
            return False
        bucket.add(message_id)
        return True

    def discard(self, message_id: int, conversation_id: int | None = None) -> bool:
        if conversation_id is not None:
            buckets = [self._ids.get(conversation_id, set())]
        else:
            buckets = list(self._ids.values())
        for bucket in buckets:
            if message_id in bucket:
                bucket.discard(message_id)
                return True
        return False

    def clear_conversation(self, conversation_id: int) -> set[int]:
        bucket = self._ids.get(conversation_id)
        if not bucket:
            return set()
        cleared = set(bucket)
        bucket.clear()
        return cleared

    def replace(self, authoritative: Mapping[int, Iterable[int]]) -> int:
        """Adopt the store's view and return how many ids disagreed with ours."""

        incoming = {int(cid): {int(mid) for mid in ids} for cid, ids in authoritative.items()}
        drift = 0
        for conversation_id in set(incoming) | set(self._ids):
            ours = self._ids.get(conversation_id, set())
            theirs = incoming.get(conversation_id, set())
            drift += len(ours ^ theirs)
        self._ids = incoming
        return drift

    def count(self, conversation_id: int) -> int:
        return len(self._ids.get(conversation_id, ()))

    @property
    def total(self) -> int:
        return sum(len(bucket) for bucket in self._ids.values())

    def snapshot(self) -> dict[str, object]:
        return {
            "total": self.total,
            "conversations": {cid: len(bucket) for cid, bucket in sorted(self._ids.items())},
        }


@dataclass(slots=True)
class PendingMessage:
    """An optimistic send waiting for the store to confirm it."""

    client_id: str
    content: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: str = "pending"
    error_code: str | None = None
    retryable: bool = False

    def as_dict(self) -> dict[str, object]:
        return {
            "client_id": self.client_id,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "status": self.status,
            "error_code": self.error_code,
            "retryable": self.retryable,
        }


class ThreadView:
    """Messages of one open conversation kept in ``(created_at, id)`` order."""

    def __init__(self, conversation_id: int) -> None:
        self.conversation_id = conversation_id
        self._messages: list[MessageRow] = []
        self._by_id: dict[int, MessageRow] = {}
        self._pending: dict[str, PendingMessage] = {}

    @property
    def messages(self) -> list[MessageRow]:
        return list(self._messages)

    @property
    def pending(self) -> list[PendingMessage]:
        return list(self._pending.values())

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._by_id

    def __len__(self) -> int:
        return len(self._messages)

    def load(self, rows: Iterable[MessageRow]) -> None:
        self._messages = []
        self._by_id = {}
        for row in rows:
            self.upsert(row)

    def upsert(self, row: MessageRow) -> bool:
        """Insert or replace a message at its ordered position.

        Returns ``False`` when the row changes nothing, which is how duplicated
        deliveries are absorbed.
        """

        existing = self._by_id.get(row.id)
        if existing is not None and existing == row:
            return False
        if existing is not None:
            self._remove_row(existing)
        if row.is_deleted:
            return existing is not None
        bisect.insort(self._messages, row, key=lambda message: message.sort_key)
        self._by_id[row.id] = row
        return True

    def remove(self, message_id: int) -> bool:
        existing = self._by_id.get(message_id)
        if existing is None:
            return False
        self._remove_row(existing)
        return True

    def _remove_row(self, row: MessageRow) -> None:
        index = bisect.bisect_left(
            self._messages, row.sort_key, key=lambda message: message.sort_key
        )
        while index < len(self._messages) and self._messages[index].id != row.id:
            index += 1
        if index < len(self._messages):
            del self._messages[index]
        self._by_id.pop(row.id, None)

    def add_pending(self, client_id: str, content: str) -> PendingMessage:
        pending = PendingMessage(client_id=client_id, content=content)
        self._pending[client_id] = pending
        return pending

    def confirm(self, client_id: str, row: MessageRow) -> None:
        self._pending.pop(client_id, None)
        self.upsert(row)

    def fail(self, client_id: str, error_code: str, *, retryable: bool) -> PendingMessage | None:
        pending = self._pending.get(client_id)
        if pending is None:
            return None
        pending.status = "failed"
        pending.error_code = error_code
        pending.retryable = retryable
        return pending

    def discard_pending(self, client_id: str) -> None:
        self._pending.pop(client_id, None)


class NotificationFeed:
    """Latest notifications, newest first, plus the ids still unread."""

    def __init__(self, limit: int = 50) -> None:
        self._limit = limit
        self._items: list[NotificationRow] = []
        self._unread: set[int] = set()

    @property
    def items(self) -> list[NotificationRow]:
        return list(self._items)

    @property
    def unread_count(self) -> int:
        return len(self._unread)

    def is_unread(self, notification_id: int) -> bool:
        return notification_id in self._unread

    def replace(self, items: Iterable[NotificationRow], unread_ids: Iterable[int]) -> int:
        incoming = {int(nid) for nid in unread_ids}
        drift = len(self._unread ^ incoming)
        ordered = sorted(items, key=lambda row: (row.created_at, row.id), reverse=True)
        self._items = ordered[: self._limit]
        self._unread = incoming
        return drift

    def prepend(self, row: NotificationRow) -> bool:
        if any(item.id == row.id for item in self._items):
            return False
        self._items.insert(0, row)
        del self._items[self._limit :]
        if not row.is_read:
            self._unread.add(row.id)
        return True

    def mark_read(self, row: NotificationRow) -> bool:
        """Apply a read transition. Returns ``True`` only if the unread set shrank."""

        self._items = [row if item.id == row.id else item for item in self._items]
        if row.id not in self._unread:
            return False
        self._unread.discard(row.id)
        return True

    def remove(self, notification_id: int) -> bool:
        before = len(self._items)
        self._items = [item for item in self._items if item.id != notification_id]
        dropped_unread = notification_id in self._unread
        self._unread.discard(notification_id)
        return dropped_unread or len(self._items) != before

    def snapshot(self) -> dict[str, object]:
        return {
            "items": [item.model_dump(mode="json") for item in self._items],
            "unread_count": self.unread_count,
        }
