from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker

from app.config import get_settings
from app.services.errors import StoreUnavailable

settings = get_settings()

# Session.info key holding a threading.Event set once the caller stopped waiting.
ABANDONED_KEY = "abandoned"


def _engine_options(url: str) -> dict:
    # pool_pre_ping: verify connections before using them
    if make_url(url).get_backend_name() == "sqlite":
        return {"connect_args": {"check_same_thread": False}}
    io_timeout = max(1, int(settings.store_operation_timeout_seconds))
    return {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_pre_ping": True,
        "connect_args": {
            "connect_timeout": io_timeout,
            "read_timeout": io_timeout,
            "write_timeout": io_timeout,
        },
    }


engine = create_engine(
    settings.database_url,
    echo=settings.debug,
    future=True,
    **_engine_options(settings.database_url),
)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


@event.listens_for(Session, "before_commit")
def _refuse_abandoned_commit(session: Session) -> None:
    abandoned = session.info.get(ABANDONED_KEY)
    if abandoned is not None and abandoned.is_set():
        raise StoreUnavailable("Store operation timed out")


@contextmanager
def get_db_session(factory: sessionmaker[Session] | None = None) -> Iterator[Session]:
    """Context manager for short-lived database sessions.

    Service operations and WebSocket handlers open one of these per store
    round trip instead of holding a connection for the socket lifetime.
    Closing the session rolls back anything left uncommitted.
    """
    db = (factory or SessionLocal)()
    try:
        yield db
    finally:
        db.close()
