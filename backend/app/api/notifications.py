"""HTTP endpoints for the notification feed."""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, status

from app.api.deps import get_current_user_id, get_sync_service, require_cron_secret
from app.schemas import (
    CleanupResult,
    NotificationPage,
    NotificationPreferences,
    NotificationPreferencesUpdate,
    NotificationRead,
    NotificationReadAllResult,
)
from app.services.sync import SocialSyncService

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=NotificationPage)
async def list_notifications(
    limit: int | None = Query(default=None, ge=1, le=200),
    unread_only: bool = Query(default=False),
    user_id: int = Depends(get_current_user_id),
    service: SocialSyncService = Depends(get_sync_service),
) -> NotificationPage:
    """Newest notifications first, with the caller's total unread count."""

    return await service.fetch_notifications(user_id, limit=limit, unread_only=unread_only)


@router.post("/read-all", response_model=NotificationReadAllResult)
async def mark_all_read(
    user_id: int = Depends(get_current_user_id),
    service: SocialSyncService = Depends(get_sync_service),
) -> NotificationReadAllResult:
    flipped = await service.mark_all_notifications_read(user_id)
    return NotificationReadAllResult(
        updated=len(flipped), notification_ids=[item.id for item in flipped]
    )


@router.post("/cleanup", response_model=CleanupResult, dependencies=[Depends(require_cron_secret)])
async def cleanup(service: SocialSyncService = Depends(get_sync_service)) -> CleanupResult:
    """Scheduled retention: auto-read stale notifications and delete old read ones."""

    return await service.cleanup_notifications(datetime.now(timezone.utc))


@router.get("/preferences", response_model=NotificationPreferences)
async def get_preferences(
    user_id: int = Depends(get_current_user_id),
    service: SocialSyncService = Depends(get_sync_service),
) -> NotificationPreferences:
    return await service.get_preferences(user_id)


@router.patch("/preferences", response_model=NotificationPreferences)
async def update_preferences(
    payload: NotificationPreferencesUpdate,
    user_id: int = Depends(get_current_user_id),
    service: SocialSyncService = Depends(get_sync_service),
) -> NotificationPreferences:
    """Switch realtime alerts on or off per notification type."""

    return await service.update_preferences(user_id, payload)


@router.post("/{notification_id}/read", response_model=NotificationRead)
async def mark_read(
    notification_id: int,
    user_id: int = Depends(get_current_user_id),
    service: SocialSyncService = Depends(get_sync_service),
) -> NotificationRead:
    return await service.mark_notification_read(user_id, notification_id)


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_notification(
    notification_id: int,
    user_id: int = Depends(get_current_user_id),
    service: SocialSyncService = Depends(get_sync_service),
) -> None:
    await service.delete_notification(user_id, notification_id)
