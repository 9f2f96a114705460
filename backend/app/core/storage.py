"""Local blob store for message attachments."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Final, Sequence
from uuid import uuid4

from fastapi import UploadFile

from app.config import get_settings
from app.models import MediaType
from app.services.errors import MediaUploadFailed, NotFound

logger = logging.getLogger(__name__)

_CHUNK_SIZE: Final[int] = 1024 * 1024  # 1 MiB


@dataclass(slots=True)
class StoredMedia:
    """An attachment persisted by the blob store."""

    url: str
    media_type: MediaType
    content_type: str
    file_size: int
    relative_path: str


def media_family(content_type: str | None) -> str | None:
    if not content_type or "/" not in content_type:
        return None
    return content_type.split("/", 1)[0].strip().lower() or None


class LocalMediaStore:
    """Writes uploads under a media root and serves them by relative path."""

    def __init__(
        self,
        root: Path,
        *,
        base_url: str = "/api/media",
        max_size: int = 10 * 1024 * 1024,
        allowed_families: Sequence[str] = ("image", "video", "audio"),
    ) -> None:
        self._root = Path(root)
        self._base_url = base_url.rstrip("/")
        self._max_size = max_size
        self._allowed = {family.lower() for family in allowed_families}

    @classmethod
    def from_settings(cls) -> "LocalMediaStore":
        settings = get_settings()
        return cls(
            settings.media_root,
            base_url=settings.media_base_url,
            max_size=settings.max_upload_size,
            allowed_families=settings.allowed_media_families,
        )

    def _media_root(self) -> Path:
        self._root.mkdir(parents=True, exist_ok=True)
        return self._root

    def validate(self, upload: UploadFile) -> MediaType:
        """Reject unsupported attachment types before anything is written."""

        family = media_family(upload.content_type)
        if family is None or family not in self._allowed:
            raise MediaUploadFailed("Only image, video or audio attachments are supported")
        try:
            return MediaType(family)
        except ValueError as exc:
            raise MediaUploadFailed(f"Unsupported attachment type '{family}'") from exc

    async def store(self, owner_id: int, upload: UploadFile) -> StoredMedia:
        """Persist an upload for ``owner_id`` and return its public URL."""

        media_type = self.validate(upload)
        try:
            target_dir = self._media_root() / f"user_{owner_id}"
            target_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise MediaUploadFailed("Attachment storage is unavailable") from exc

        extension = Path(upload.filename or "").suffix
        absolute_path = target_dir / f"{uuid4().hex}{extension}"

        total_size = 0
        try:
            with absolute_path.open("wb") as buffer:
                while True:
                    chunk = await upload.read(_CHUNK_SIZE)
                    if not chunk:
                        break
                    total_size += len(chunk)
                    if total_size > self._max_size:
                        raise MediaUploadFailed("Attachment exceeds allowed size")
                    buffer.write(chunk)
            if total_size == 0:
                raise MediaUploadFailed("Attachment is empty")
        except (MediaUploadFailed, OSError) as exc:
            absolute_path.unlink(missing_ok=True)
            logger.warning(
                "Attachment upload rejected",
                extra={"owner_id": owner_id, "reason": str(exc)},
            )
            if isinstance(exc, MediaUploadFailed):
                raise
            raise MediaUploadFailed("Attachment could not be stored") from exc
        finally:
            await upload.close()

        relative_path = os.path.relpath(absolute_path, self._media_root()).replace(os.sep, "/")
        return StoredMedia(
            url=f"{self._base_url}/{relative_path}",
            media_type=media_type,
            content_type=upload.content_type or "application/octet-stream",
            file_size=total_size,
            relative_path=relative_path,
        )

    def resolve_path(self, relative_path: str) -> Path:
        """Return the absolute path for a stored file, refusing paths outside the root."""

        root = self._media_root().resolve()
        candidate = (root / relative_path).resolve()
        if not candidate.is_relative_to(root) or not candidate.is_file():
            raise NotFound("File not found")
        return candidate

    def discard(self, relative_path: str) -> None:
        """Remove a stored file whose message was never written."""

        root = self._media_root().resolve()
        candidate = (root / relative_path).resolve()
        if not candidate.is_relative_to(root):
            return
        try:
            candidate.unlink(missing_ok=True)
        except OSError:
            logger.warning("Orphaned attachment could not be removed", extra={"path": relative_path})
            return
        logger.info("Orphaned attachment removed", extra={"path": relative_path})
