"""Upload quota checks.

Everything here is a pure function of the Event row, the contributor's
aggregate and the current time: nothing is reserved or incremented. Counters
move only after the ingestion pipeline has written the media record.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from instamoments.core import errors
from instamoments.core.timeutil import utcnow


class MediaKind(str, Enum):
    PHOTO = "photo"
    VIDEO = "video"


class DenialReason(str, Enum):
    EVENT_INACTIVE = "event_inactive"
    EVENT_EXPIRED = "event_expired"
    EVENT_QUOTA_EXCEEDED = "event_quota_exceeded"
    USER_QUOTA_EXCEEDED = "user_quota_exceeded"
    VIDEO_NOT_ENABLED = "video_not_enabled"
    VIDEO_QUOTA_EXCEEDED = "video_quota_exceeded"


_DENIAL_ERRORS = {
    DenialReason.EVENT_INACTIVE: errors.EventInactive,
    DenialReason.EVENT_EXPIRED: errors.GalleryExpired,
    DenialReason.EVENT_QUOTA_EXCEEDED: errors.EventPhotoLimitReached,
    DenialReason.USER_QUOTA_EXCEEDED: errors.UserPhotoLimitReached,
    DenialReason.VIDEO_NOT_ENABLED: errors.VideoNotEnabled,
    DenialReason.VIDEO_QUOTA_EXCEEDED: errors.VideoLimitReached,
}


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    reason: Optional[DenialReason] = None
    message: Optional[str] = None

    def to_error(self) -> errors.GalleryError:
        if self.allowed or self.reason is None:
            raise ValueError("an allowed decision has no error")
        return _DENIAL_ERRORS[self.reason](self.message)

    def raise_for_denial(self) -> None:
        if not self.allowed:
            raise self.to_error()


ALLOWED = QuotaDecision(allowed=True)


def _deny(reason: DenialReason, message: str) -> QuotaDecision:
    return QuotaDecision(allowed=False, reason=reason, message=message)


def check_upload(
    event,
    contributor,
    media_kind: MediaKind,
    now: Optional[datetime] = None,
) -> QuotaDecision:
    """Return the first failing quota rule for an upload, or ALLOWED.

    `contributor` is the EventContributor aggregate for the uploader, or None
    when the uploader has no email (anonymous) or has not uploaded yet; an
    absent aggregate means a count of zero.
    """
    now = now or utcnow()
    kind = MediaKind(media_kind)
    status = getattr(event, "Status", None)

    if status == "expired":
        return _deny(DenialReason.EVENT_EXPIRED, "This gallery has expired")
    if status != "active":
        return _deny(DenialReason.EVENT_INACTIVE, "Event is not active")
    if not now < event.ExpiresAt:
        return _deny(DenialReason.EVENT_EXPIRED, "This gallery has expired")

    if kind is MediaKind.VIDEO:
        if not event.HasVideoAddon:
            return _deny(
                DenialReason.VIDEO_NOT_ENABLED,
                "Video addon not enabled. Upgrade to add video support.",
            )
        if int(event.TotalVideos or 0) >= int(event.MaxVideos or 0):
            return _deny(
                DenialReason.VIDEO_QUOTA_EXCEEDED,
                f"Video limit reached ({event.MaxVideos} videos). Upgrade to upload more.",
            )
        return ALLOWED

    if int(event.TotalPhotos or 0) >= int(event.MaxPhotos or 0):
        return _deny(
            DenialReason.EVENT_QUOTA_EXCEEDED,
            f"Event has reached maximum photo limit ({event.MaxPhotos} photos)",
        )
    if contributor is not None:
        per_user = int(event.MaxPhotosPerUser or 0)
        if int(contributor.PhotoCount or 0) >= per_user:
            return _deny(
                DenialReason.USER_QUOTA_EXCEEDED,
                f"You have reached the maximum of {per_user} photos per user",
            )
    return ALLOWED
