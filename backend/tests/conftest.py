"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
for candidate in (ROOT_DIR, ROOT_DIR / "src"):
    if str(candidate) not in sys.path:
        sys.path.insert(0, str(candidate))

from amply.realtime.managers import get_change_feed
from amply.realtime.transport import RedisNATSTransport
from app.api.deps import get_sync_service
from app.core.security import create_access_token
from app.core.storage import LocalMediaStore
from app.main import app
from app.models import Base, Conversation, ConversationParticipant, Post, User, pair_key
from app.services.sync import SocialSyncService


def make_user(session_factory: sessionmaker[Session], display_name: str) -> int:
    with session_factory() as session:
        user = User(display_name=display_name)
        session.add(user)
        session.commit()
        return user.id


def make_conversation(session_factory: sessionmaker[Session], user_id: int, other_id: int) -> int:
    with session_factory() as session:
        conversation = Conversation(pair_key=pair_key(user_id, other_id))
        conversation.participants = [
            ConversationParticipant(user_id=user_id),
            ConversationParticipant(user_id=other_id),
        ]
        session.add(conversation)
        session.commit()
        return conversation.id


def make_post(session_factory: sessionmaker[Session], owner_id: int) -> int:
    with session_factory() as session:
        post = Post(user_id=owner_id, caption="sunset")
        session.add(post)
        session.commit()
        return post.id


def auth_headers(user_id: int) -> dict[str, str]:
    token = create_access_token({"sub": str(user_id)})
    return {"Authorization": f"Bearer {token}"}


def drop_local_streams(transport: RedisNATSTransport) -> None:
    """End every in-process stream the way a dropped broker connection would."""

    for state in list(transport._local_states):
        if state.queue is not None:
            state.queue.put_nowait(None)


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine."""

    return sessionmaker(bind=test_engine, future=True)


@pytest.fixture()
def db_session(session_factory) -> Iterator[Session]:
    """Yield a SQLAlchemy session for unit tests."""

    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def media_store(tmp_path) -> LocalMediaStore:
    return LocalMediaStore(tmp_path / "media", base_url="/api/media", max_size=1024)


@pytest.fixture()
def sync_service(session_factory, media_store) -> SocialSyncService:
    """Sync service over the test database, publishing on the process transport."""

    return SocialSyncService(
        session_factory,
        change_feed=get_change_feed(),
        media_store=media_store,
        timeout=5.0,
        serialize=True,
    )


@pytest.fixture()
def client(sync_service) -> Iterator[TestClient]:
    """Yield a FastAPI TestClient with the sync service overridden."""

    app.dependency_overrides[get_sync_service] = lambda: sync_service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"
