from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, event, func, select
from sqlalchemy.orm import sessionmaker

from amply.realtime.managers import get_change_feed
from app.models import Base, Conversation, ConversationParticipant
from app.services import conversations, messages
from app.services.errors import InvalidArgument, NotFound, PermissionDenied, StoreUnavailable
from app.services.sync import SocialSyncService
from conftest import make_conversation, make_user


def test_resolve_creates_conversation_with_both_participants(session_factory, db_session) -> None:
    alice = make_user(session_factory, "Alice")
    bob = make_user(session_factory, "Bob")

    conversation = conversations.resolve_conversation(db_session, alice, bob)

    assert conversation.member_ids() == {alice, bob}
    assert conversation.pair_key == f"{min(alice, bob)}:{max(alice, bob)}"


def test_resolve_is_symmetric_and_never_duplicates(session_factory, db_session) -> None:
    alice = make_user(session_factory, "Alice")
    bob = make_user(session_factory, "Bob")

    first = conversations.resolve_conversation(db_session, alice, bob)
    second = conversations.resolve_conversation(db_session, bob, alice)
    third = conversations.resolve_conversation(db_session, alice, bob)

    assert first.id == second.id == third.id
    assert db_session.execute(select(func.count(Conversation.id))).scalar_one() == 1


def test_resolve_with_self_is_rejected(session_factory, db_session) -> None:
    alice = make_user(session_factory, "Alice")

    with pytest.raises(InvalidArgument):
        conversations.resolve_conversation(db_session, alice, alice)


def test_resolve_unknown_user_is_not_found(session_factory, db_session) -> None:
    alice = make_user(session_factory, "Alice")

    with pytest.raises(NotFound):
        conversations.resolve_conversation(db_session, alice, 9999)


def test_losing_creator_adopts_existing_conversation(
    session_factory, db_session, monkeypatch
) -> None:
    alice = make_user(session_factory, "Alice")
    bob = make_user(session_factory, "Bob")
    winner_id = make_conversation(session_factory, alice, bob)

    original = conversations.find_conversation
    calls = {"count": 0}

    def stale_lookup(db, user_id, other_id):
        calls["count"] += 1
        if calls["count"] == 1:
            return None
        return original(db, user_id, other_id)

    monkeypatch.setattr(conversations, "find_conversation", stale_lookup)

    resolved = conversations.resolve_conversation(db_session, bob, alice)

    assert resolved.id == winner_id
    assert calls["count"] == 2
    assert db_session.execute(select(func.count(Conversation.id))).scalar_one() == 1
    participants = db_session.execute(select(func.count(ConversationParticipant.id))).scalar_one()
    assert participants == 2


def test_resolve_gives_up_after_repeated_conflicts(session_factory, db_session, monkeypatch) -> None:
    alice = make_user(session_factory, "Alice")
    bob = make_user(session_factory, "Bob")
    make_conversation(session_factory, alice, bob)

    monkeypatch.setattr(conversations, "find_conversation", lambda *_args: None)

    with pytest.raises(StoreUnavailable):
        conversations.resolve_conversation(db_session, alice, bob)


def test_missing_participant_is_restored(session_factory, db_session) -> None:
    alice = make_user(session_factory, "Alice")
    bob = make_user(session_factory, "Bob")
    conversation_id = make_conversation(session_factory, alice, bob)
    with session_factory() as session:
        row = session.execute(
            select(ConversationParticipant).where(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.user_id == bob,
            )
        ).scalar_one()
        session.delete(row)
        session.commit()

    conversation = conversations.resolve_conversation(db_session, alice, bob)

    assert conversation.id == conversation_id
    assert conversation.member_ids() == {alice, bob}


def test_require_participant_rejects_outsiders(session_factory, db_session) -> None:
    alice = make_user(session_factory, "Alice")
    bob = make_user(session_factory, "Bob")
    carol = make_user(session_factory, "Carol")
    conversation_id = make_conversation(session_factory, alice, bob)

    with pytest.raises(PermissionDenied):
        conversations.require_participant(db_session, conversation_id, carol)
    with pytest.raises(NotFound):
        conversations.require_participant(db_session, conversation_id + 100, alice)


def test_mute_flag_is_per_participant(session_factory, db_session) -> None:
    alice = make_user(session_factory, "Alice")
    bob = make_user(session_factory, "Bob")
    conversation_id = make_conversation(session_factory, alice, bob)

    updated = conversations.update_participant(db_session, conversation_id, bob, is_muted=True)

    assert updated.is_muted is True
    assert conversations.muted_conversation_ids(db_session, bob) == {conversation_id}
    assert conversations.muted_conversation_ids(db_session, alice) == set()


def test_listing_fetches_last_messages_in_one_query(
    session_factory, db_session, test_engine
) -> None:
    alice = make_user(session_factory, "Alice")
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    expected: dict[int, str] = {}
    for index, name in enumerate(("Bob", "Carol", "Dave")):
        other = make_user(session_factory, name)
        conversation_id = make_conversation(session_factory, alice, other)
        messages.create_message(
            db_session, conversation_id, other, f"hi from {name}", now=base + timedelta(hours=index)
        )
        latest, _ = messages.create_message(
            db_session, conversation_id, alice, "oops", now=base + timedelta(hours=index, minutes=1)
        )
        messages.delete_message(db_session, latest.id, alice)
        expected[conversation_id] = f"hi from {name}"
    solo = make_user(session_factory, "Erin")
    solo_peer = make_user(session_factory, "Frank")
    make_conversation(session_factory, solo, solo_peer)

    statements: list[str] = []

    def record(conn, cursor, statement, parameters, context, executemany) -> None:
        statements.append(statement)

    event.listen(test_engine, "before_cursor_execute", record)
    try:
        summaries = conversations.list_conversations(db_session, alice)
        busy_count = len(statements)
        statements.clear()
        conversations.list_conversations(db_session, solo)
        solo_count = len(statements)
    finally:
        event.remove(test_engine, "before_cursor_execute", record)

    assert {summary.id: summary.last_message.content for summary in summaries} == expected
    assert [summary.last_message.content for summary in summaries][0] == "hi from Dave"
    assert busy_count == solo_count


@pytest.mark.anyio("asyncio")
async def test_concurrent_resolves_create_one_conversation(tmp_path, media_store) -> None:
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'directory.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
        future=True,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)
    service = SocialSyncService(
        factory, change_feed=get_change_feed(), media_store=media_store, timeout=30.0
    )
    alice = make_user(factory, "Alice")
    bob = make_user(factory, "Bob")

    try:
        resolved = await asyncio.gather(
            *(
                service.resolve_conversation(*((alice, bob) if index % 2 else (bob, alice)))
                for index in range(8)
            )
        )

        assert len({conversation.id for conversation in resolved}) == 1
        with factory() as session:
            assert session.execute(select(func.count(Conversation.id))).scalar_one() == 1
            participants = session.execute(select(ConversationParticipant.user_id)).scalars().all()
            assert sorted(participants) == sorted([alice, bob])
    finally:
        engine.dispose()
