"""Typed failures raised by the sync service layer."""

from __future__ import annotations

from fastapi import status


class SyncError(Exception):
    """Base class for every failure surfaced by a sync operation."""

    code = "sync_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable = False

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.__class__.__doc__ or self.code
        super().__init__(self.detail)

    def to_dict(self) -> dict[str, object]:
        return {"detail": self.detail, "code": self.code, "retryable": self.retryable}


class NotAuthenticated(SyncError):
    """Could not validate credentials"""

    code = "not_authenticated"
    status_code = status.HTTP_401_UNAUTHORIZED


class InvalidArgument(SyncError):
    """Invalid argument"""

    code = "invalid_argument"
    status_code = status.HTTP_400_BAD_REQUEST


class PermissionDenied(SyncError):
    """Permission denied"""

    code = "permission_denied"
    status_code = status.HTTP_403_FORBIDDEN


class NotFound(SyncError):
    """Not found"""

    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class MediaUploadFailed(SyncError):
    """Attachment upload failed"""

    code = "media_upload_failed"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class StoreUnavailable(SyncError):
    """Store is temporarily unavailable"""

    code = "store_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True


class ConflictRetry(SyncError):
    """Lost a uniqueness race; the caller must re-resolve."""

    code = "conflict_retry"
    status_code = status.HTTP_409_CONFLICT
    retryable = True
