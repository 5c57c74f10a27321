"""Error taxonomy shared by services and the HTTP layer.

Services raise these; `main.py` renders them as
``{"success": false, "error": {"code", "message", "details"?}}``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional


class GalleryError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500
    default_message = "An unexpected error occurred"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationFailed(GalleryError):
    code = "VALIDATION_ERROR"
    status_code = 400
    default_message = "Invalid request data"


class RateLimitExceeded(GalleryError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429
    default_message = "Too many uploads. Please try again later."

    def __init__(self, limit: int, remaining: int, reset_at: datetime, message: Optional[str] = None):
        self.limit = limit
        self.remaining = remaining
        self.reset_at = reset_at
        super().__init__(
            message,
            details={"remaining": remaining, "resetAt": reset_at.isoformat()},
        )


class QuotaExceeded(GalleryError):
    status_code = 400


class EventPhotoLimitReached(QuotaExceeded):
    code = "EVENT_PHOTO_LIMIT_REACHED"
    default_message = "Event has reached maximum photo limit"


class UserPhotoLimitReached(QuotaExceeded):
    code = "USER_PHOTO_LIMIT_REACHED"
    default_message = "You have reached the maximum number of photos per person"


class VideoNotEnabled(QuotaExceeded):
    code = "VIDEO_NOT_ENABLED"
    default_message = "Video addon not enabled. Upgrade to add video support."


class VideoLimitReached(QuotaExceeded):
    code = "VIDEO_LIMIT_REACHED"
    default_message = "Event has reached maximum video limit"


class EventInactive(GalleryError):
    code = "EVENT_INACTIVE"
    status_code = 400
    default_message = "Event is not active"


class GalleryExpired(GalleryError):
    code = "GALLERY_EXPIRED"
    status_code = 410
    default_message = "This gallery has expired"


class GalleryNotFound(GalleryError):
    code = "GALLERY_NOT_FOUND"
    status_code = 404
    default_message = "Gallery not found or no longer active"


class MediaNotFound(GalleryError):
    code = "MEDIA_NOT_FOUND"
    status_code = 404
    default_message = "Media item not found"


class StorageError(GalleryError):
    code = "STORAGE_ERROR"
    status_code = 502
    default_message = "Failed to store file"


class DatabaseError(GalleryError):
    code = "DATABASE_ERROR"
    status_code = 500
    default_message = "Database operation failed"


class AuthRequired(GalleryError):
    code = "AUTH_REQUIRED"
    status_code = 401
    default_message = "Authentication required"


class Forbidden(GalleryError):
    code = "FORBIDDEN"
    status_code = 403
    default_message = "You do not have access to this event"


class EventHasContent(GalleryError):
    code = "EVENT_HAS_CONTENT"
    status_code = 400
    default_message = "Cannot delete event with photos or videos. Archive instead."
