"""Serves stored message attachments."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import FileResponse

from app.api.deps import get_sync_service
from app.services.sync import SocialSyncService

router = APIRouter(prefix="/media", tags=["media"])


@router.get("/{relative_path:path}")
async def download_media(
    relative_path: str,
    service: SocialSyncService = Depends(get_sync_service),
) -> FileResponse:
    path = service.media_store.resolve_path(relative_path)
    return FileResponse(path)
