"""FastAPI dependencies for the API layer."""

from __future__ import annotations

import secrets

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from amply.realtime.managers import get_change_feed

from app.config import get_settings
from app.core.security import user_id_from_token
from app.core.storage import LocalMediaStore
from app.database import SessionLocal
from app.services.errors import NotAuthenticated
from app.services.sync import SocialSyncService

settings = get_settings()

bearer_scheme = HTTPBearer(auto_error=False)

_sync_service: SocialSyncService | None = None


def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> int:
    """Resolve the caller from the identity provider's bearer token."""

    if credentials is None or not credentials.credentials:
        raise NotAuthenticated("Missing bearer token")
    return user_id_from_token(credentials.credentials)


def require_cron_secret(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> None:
    """Guard scheduled maintenance endpoints with the shared cron secret."""

    expected = settings.cron_secret
    if not expected:
        raise NotAuthenticated("Cleanup endpoint is disabled")
    if credentials is None or not secrets.compare_digest(credentials.credentials, expected):
        raise NotAuthenticated("Invalid cron secret")


def get_sync_service() -> SocialSyncService:
    global _sync_service
    if _sync_service is None:
        _sync_service = SocialSyncService(
            SessionLocal,
            change_feed=get_change_feed(),
            media_store=LocalMediaStore.from_settings(),
            settings=settings,
            serialize=settings.database_url.startswith("sqlite"),
        )
    return _sync_service
