"""Upload ingestion: validate, store blobs, persist the record, bump counters.

Order of operations for one upload:

1. boundary validation (MIME, size, duration); nothing is written on failure
2. quota pre-check against the current Event row, before any blob exists
3. file blob write (failure is STORAGE_ERROR); thumbnail write (failure only
   degrades the item)
4. one transaction: media insert, conditional counter UPDATEs on Event and
   EventContributor, commit
5. insert delta to the realtime channel, analytics row (fire-and-forget)

Steps 4 and 5 of one event run inside the realtime engine's ordered section,
as do the commit and delta of every edit and delete, so viewers receive
deltas in commit order.

If step 4 fails, the blobs written in step 3 are deleted again so no
orphaned objects are left behind. Counters are only touched inside the
transaction that writes the record.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Mapping, Optional

from sqlalchemy import and_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from instamoments.core import errors
from instamoments.core.timeutil import utcnow
from instamoments.models.event import Event, EventContributor
from instamoments.models.media import MEDIA_MODELS, Photo, Video
from instamoments.schemas import UploadMetadata, media_from_row
from instamoments.services.mime_utils import is_allowed_mime
from instamoments.services.quota import MediaKind, check_upload
from instamoments.services.realtime import DeltaType

logger = logging.getLogger(__name__)
audit = logging.getLogger("audit")

_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/heic": ".heic",
    "image/heif": ".heif",
    "video/mp4": ".mp4",
    "video/webm": ".webm",
    "video/quicktime": ".mov",
}

_UNSET = object()


@dataclass(frozen=True)
class IncomingFile:
    data: bytes
    content_type: Optional[str] = None
    filename: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class UploadLimits:
    max_photo_bytes: int = 10 * 1024 * 1024
    max_video_bytes: int = 50 * 1024 * 1024
    max_thumbnail_bytes: int = 1 * 1024 * 1024
    photo_mime_types: tuple = ("image/jpeg", "image/png", "image/webp", "image/heic", "image/heif")
    video_mime_types: tuple = ("video/mp4", "video/webm", "video/quicktime")
    min_video_seconds: float = 1.0
    max_video_seconds: float = 20.0

    @classmethod
    def from_settings(cls, settings) -> "UploadLimits":
        return cls(
            max_photo_bytes=settings.MAX_PHOTO_BYTES,
            max_video_bytes=settings.MAX_VIDEO_BYTES,
            max_thumbnail_bytes=settings.MAX_THUMBNAIL_BYTES,
            photo_mime_types=tuple(settings.ALLOWED_PHOTO_MIME_TYPES),
            video_mime_types=tuple(settings.ALLOWED_VIDEO_MIME_TYPES),
            min_video_seconds=settings.MIN_VIDEO_SECONDS,
            max_video_seconds=settings.MAX_VIDEO_SECONDS,
        )


def _mb(n: int) -> str:
    return f"{n / (1024 * 1024):g}MB"


def validate_upload(
    metadata: UploadMetadata,
    file: IncomingFile,
    thumbnail: Optional[IncomingFile],
    limits: UploadLimits,
) -> str:
    """Reject malformed uploads before any side effect; returns the file's MIME type."""
    kind = MediaKind(metadata.media_kind)
    if file.size == 0:
        raise errors.ValidationFailed("File is empty")

    if kind is MediaKind.VIDEO:
        allowed, max_bytes = limits.video_mime_types, limits.max_video_bytes
    else:
        allowed, max_bytes = limits.photo_mime_types, limits.max_photo_bytes

    ok, mime = is_allowed_mime(file.data, allowed, file.content_type)
    if not ok:
        raise errors.ValidationFailed(
            f"Unsupported {kind.value} type '{mime}'",
            details={"allowed": sorted(set(allowed))},
        )
    if file.size > max_bytes:
        raise errors.ValidationFailed(f"File too large. Maximum size is {_mb(max_bytes)}")

    if kind is MediaKind.VIDEO:
        duration = metadata.duration_seconds
        if duration is None:
            raise errors.ValidationFailed("Video duration is required")
        if not limits.min_video_seconds <= duration <= limits.max_video_seconds:
            raise errors.ValidationFailed(
                f"Video must be between {limits.min_video_seconds:g} and "
                f"{limits.max_video_seconds:g} seconds"
            )

    if thumbnail is not None and thumbnail.size > limits.max_thumbnail_bytes:
        raise errors.ValidationFailed(
            f"Thumbnail too large. Maximum size is {_mb(limits.max_thumbnail_bytes)}"
        )
    return mime


def client_identity(
    headers: Mapping[str, str], peer: Optional[str] = None, user_id: Optional[int] = None
) -> str:
    """Rate-limit identity: the user for signed-in callers, else the client IP."""
    if user_id is not None:
        return f"user:{user_id}"
    forwarded = headers.get("x-forwarded-for") or ""
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    real_ip = (headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return peer or "unknown"


@dataclass(frozen=True)
class StoredBlobs:
    media_id: str
    file_ref: str
    size_bytes: int
    mime_type: str
    thumbnail_ref: Optional[str] = None
    thumbnail_degraded: bool = False


def _find_contributor(db: Session, event_id: str, email: Optional[str]):
    if not email:
        return None
    return (
        db.query(EventContributor)
        .filter(EventContributor.EventID == event_id, EventContributor.ContributorEmail == email)
        .first()
    )


def _name_has_media(db: Session, event_id: str, name: str, exclude_id: Optional[str] = None) -> bool:
    for model in (Photo, Video):
        q = db.query(model.MediaID).filter(model.EventID == event_id, model.ContributorName == name)
        if exclude_id is not None:
            q = q.filter(model.MediaID != exclude_id)
        if q.first() is not None:
            return True
    return False


class IngestionPipeline:
    def __init__(
        self,
        storage,
        realtime=None,
        analytics=None,
        limits: Optional[UploadLimits] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.realtime = realtime
        self.analytics = analytics
        self.limits = limits or UploadLimits()
        self.clock = clock

    # -- full upload ---------------------------------------------------

    def upload(
        self,
        db: Session,
        metadata: UploadMetadata,
        file: IncomingFile,
        thumbnail: Optional[IncomingFile] = None,
        client: Optional[str] = None,
        user_agent: Optional[str] = None,
    ):
        kind = MediaKind(metadata.media_kind)
        mime = validate_upload(metadata, file, thumbnail, self.limits)

        event = db.query(Event).filter(Event.EventID == str(metadata.event_id)).first()
        if event is None:
            raise errors.GalleryNotFound("Event not found")

        # Refuse before writing any blob
        contributor = _find_contributor(db, event.EventID, metadata.contributor_email)
        decision = check_upload(event, contributor, kind, now=self.clock())
        if not decision.allowed:
            self._log_denied(event.EventID, metadata, decision.reason.value, client)
            raise decision.to_error()

        media_id = str(uuid.uuid4())
        folder = "videos" if kind is MediaKind.VIDEO else "photos"
        file_ref = self.storage.put(
            file.data,
            f"events/{event.EventID}/{folder}/{media_id}{_EXTENSIONS.get(mime, '')}",
            mime,
        )

        thumb_ref = None
        degraded = False
        if thumbnail is not None and thumbnail.size:
            try:
                thumb_ref = self.storage.put(
                    thumbnail.data,
                    f"events/{event.EventID}/thumbnails/{media_id}.jpg",
                    thumbnail.content_type or "image/jpeg",
                )
            except errors.StorageError:
                degraded = True
                logger.warning(
                    "upload.thumbnail_failed",
                    extra={"event_id": event.EventID, "media_id": media_id},
                    exc_info=True,
                )

        stored = StoredBlobs(
            media_id=media_id,
            file_ref=file_ref,
            size_bytes=file.size,
            mime_type=mime,
            thumbnail_ref=thumb_ref,
            thumbnail_degraded=degraded,
        )
        try:
            item = self.ingest(db, event, metadata, stored)
        except errors.GalleryError:
            self._discard(stored)
            raise

        self._record_analytics(event.EventID, item, client, user_agent)
        return item

    # -- record + counters ---------------------------------------------

    def ingest(self, db: Session, event, metadata: UploadMetadata, stored: StoredBlobs):
        """Persist the record and bump counters in one transaction; publish on commit."""
        with self._ordered(event.EventID):
            return self._ingest(db, event, metadata, stored)

    def _ingest(self, db: Session, event, metadata: UploadMetadata, stored: StoredBlobs):
        kind = MediaKind(metadata.media_kind)
        now = self.clock()
        event_id = event.EventID

        contributor = _find_contributor(db, event_id, metadata.contributor_email)
        decision = check_upload(event, contributor, kind, now=now)
        if not decision.allowed:
            self._log_denied(event_id, metadata, decision.reason.value, None)
            raise decision.to_error()

        model = MEDIA_MODELS[kind.value]
        try:
            new_name = not _name_has_media(db, event_id, metadata.contributor_name)
            row = model(
                MediaID=stored.media_id,
                EventID=event_id,
                ContributorName=metadata.contributor_name,
                ContributorEmail=metadata.contributor_email,
                FileRef=stored.file_ref,
                ThumbnailRef=stored.thumbnail_ref,
                ThumbnailDegraded=stored.thumbnail_degraded,
                FileSize=stored.size_bytes,
                MimeType=stored.mime_type,
                Caption=metadata.caption,
                IsApproved=True,
                UploadedAt=now,
            )
            if kind is MediaKind.VIDEO:
                row.DurationSeconds = float(metadata.duration_seconds or 0)
            db.add(row)
            db.flush()

            # Conditional increments: a concurrent upload that took the last
            # slot makes rowcount 0 and this one is refused.
            if kind is MediaKind.VIDEO:
                guard = and_(Event.HasVideoAddon.is_(True), Event.TotalVideos < Event.MaxVideos)
                values = {"TotalVideos": Event.TotalVideos + 1}
            else:
                guard = Event.TotalPhotos < Event.MaxPhotos
                values = {"TotalPhotos": Event.TotalPhotos + 1}
            if new_name:
                values["TotalContributors"] = Event.TotalContributors + 1
            values["UpdatedAt"] = now
            res = db.execute(
                update(Event)
                .where(Event.EventID == event_id, Event.Status == "active", guard)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 0:
                db.rollback()
                raise (
                    errors.VideoLimitReached() if kind is MediaKind.VIDEO
                    else errors.EventPhotoLimitReached()
                )

            if metadata.contributor_email:
                self._bump_contributor(db, event, metadata, kind, now)

            db.commit()
        except errors.GalleryError:
            raise
        except IntegrityError as e:
            db.rollback()
            logger.warning("upload.conflict", extra={"event_id": event_id}, exc_info=True)
            raise errors.DatabaseError("Upload conflicted with a concurrent write; please retry") from e
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("upload.record_failed", extra={"event_id": event_id})
            raise errors.DatabaseError("Failed to save upload record") from e

        db.refresh(event)
        item = media_from_row(row, self.storage)
        audit.info(
            "upload.accepted",
            extra={
                "event_id": event_id,
                "media_id": item.id,
                "kind": kind.value,
                "size_bytes": stored.size_bytes,
                "thumbnail_degraded": stored.thumbnail_degraded,
            },
        )
        self._publish(event_id, DeltaType.INSERT, item)
        return item

    def _bump_contributor(self, db: Session, event, metadata: UploadMetadata, kind: MediaKind, now):
        photo = 1 if kind is MediaKind.PHOTO else 0
        video = 1 - photo
        stmt = update(EventContributor).where(
            EventContributor.EventID == event.EventID,
            EventContributor.ContributorEmail == metadata.contributor_email,
        )
        if photo:
            stmt = stmt.where(EventContributor.PhotoCount < event.MaxPhotosPerUser)
        res = db.execute(
            stmt.values(
                PhotoCount=EventContributor.PhotoCount + photo,
                VideoCount=EventContributor.VideoCount + video,
                ContributorName=metadata.contributor_name,
                LastContributionAt=now,
            ).execution_options(synchronize_session=False)
        )
        if res.rowcount:
            return
        if _find_contributor(db, event.EventID, metadata.contributor_email) is not None:
            # row exists, so the per-user guard refused it
            db.rollback()
            raise errors.UserPhotoLimitReached(
                f"You have reached the maximum of {event.MaxPhotosPerUser} photos per user"
            )
        db.add(
            EventContributor(
                EventID=event.EventID,
                ContributorEmail=metadata.contributor_email,
                ContributorName=metadata.contributor_name,
                PhotoCount=photo,
                VideoCount=video,
                LastContributionAt=now,
            )
        )
        db.flush()

    # -- administrative edits --------------------------------------------

    def _load_media(self, db: Session, event_id: str, media_id: str):
        for model in (Photo, Video):
            row = (
                db.query(model)
                .filter(model.MediaID == str(media_id), model.EventID == event_id)
                .first()
            )
            if row is not None:
                return row
        raise errors.MediaNotFound()

    def update_media(self, db: Session, event, media_id: str, caption=_UNSET, approved=None):
        """Edit caption and/or approval; approval changes move the counters."""
        with self._ordered(event.EventID):
            return self._update_media(db, event, media_id, caption, approved)

    def _update_media(self, db: Session, event, media_id: str, caption, approved):
        row = self._load_media(db, event.EventID, media_id)
        is_video = isinstance(row, Video)
        total_col = Event.TotalVideos if is_video else Event.TotalPhotos
        max_col = Event.MaxVideos if is_video else Event.MaxPhotos
        now = self.clock()
        try:
            if caption is not _UNSET:
                caption = (caption or "").strip() or None
                if caption is not None and len(caption) > 200:
                    raise errors.ValidationFailed("Caption must be at most 200 characters")
                row.Caption = caption
            if approved is not None and bool(approved) != bool(row.IsApproved):
                if approved:
                    res = db.execute(
                        update(Event)
                        .where(Event.EventID == event.EventID, total_col < max_col)
                        .values({total_col: total_col + 1, Event.UpdatedAt: now})
                        .execution_options(synchronize_session=False)
                    )
                    if res.rowcount == 0:
                        db.rollback()
                        raise (
                            errors.VideoLimitReached() if is_video
                            else errors.EventPhotoLimitReached()
                        )
                else:
                    db.execute(
                        update(Event)
                        .where(Event.EventID == event.EventID, total_col > 0)
                        .values({total_col: total_col - 1, Event.UpdatedAt: now})
                        .execution_options(synchronize_session=False)
                    )
                row.IsApproved = bool(approved)
            db.commit()
        except errors.GalleryError:
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("media.update_failed", extra={"media_id": media_id})
            raise errors.DatabaseError() from e

        db.refresh(event)
        item = media_from_row(row, self.storage)
        audit.info(
            "media.updated",
            extra={"event_id": event.EventID, "media_id": item.id, "approved": item.approved},
        )
        self._publish(event.EventID, DeltaType.UPDATE, item)
        return item

    def delete_media(self, db: Session, event, media_id: str):
        """Delete one item: record and counters transactionally, blobs best-effort."""
        with self._ordered(event.EventID):
            item = self._delete_record(db, event, media_id)
        for ref in (item.file_ref, item.thumbnail_ref):
            if ref and not self.storage.delete(ref):
                logger.warning("media.blob_delete_failed", extra={"media_id": item.id, "ref": ref})
        return item

    def _delete_record(self, db: Session, event, media_id: str):
        row = self._load_media(db, event.EventID, media_id)
        item = media_from_row(row, self.storage)
        is_video = isinstance(row, Video)
        now = self.clock()
        try:
            values = {Event.UpdatedAt: now}
            if row.IsApproved:
                col = Event.TotalVideos if is_video else Event.TotalPhotos
                values[col] = col - 1
            if not _name_has_media(db, event.EventID, row.ContributorName, exclude_id=row.MediaID):
                values[Event.TotalContributors] = Event.TotalContributors - 1
            db.execute(
                update(Event)
                .where(Event.EventID == event.EventID)
                .values(values)
                .execution_options(synchronize_session=False)
            )
            if row.ContributorEmail:
                count_col = EventContributor.VideoCount if is_video else EventContributor.PhotoCount
                db.execute(
                    update(EventContributor)
                    .where(
                        EventContributor.EventID == event.EventID,
                        EventContributor.ContributorEmail == row.ContributorEmail,
                        count_col > 0,
                    )
                    .values({count_col: count_col - 1})
                    .execution_options(synchronize_session=False)
                )
            db.delete(row)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("media.delete_failed", extra={"media_id": media_id})
            raise errors.DatabaseError() from e

        db.refresh(event)
        audit.info("media.deleted", extra={"event_id": event.EventID, "media_id": item.id})
        self._publish(event.EventID, DeltaType.DELETE, item)
        return item

    # -- helpers -----------------------------------------------------------

    def _discard(self, stored: StoredBlobs) -> None:
        for ref in (stored.file_ref, stored.thumbnail_ref):
            if ref and not self.storage.delete(ref):
                logger.error("upload.orphaned_blob", extra={"media_id": stored.media_id, "ref": ref})

    def _ordered(self, event_id: str):
        if self.realtime is None:
            return nullcontext()
        return self.realtime.ordered(event_id)

    def _publish(self, event_id: str, delta_type: DeltaType, item) -> None:
        if self.realtime is None:
            return
        try:
            self.realtime.publish(event_id, delta_type, item)
        except Exception:
            # Viewers recover through heartbeat timeout and resync
            logger.warning(
                "realtime.publish_failed",
                extra={"event_id": event_id, "media_id": item.id},
                exc_info=True,
            )

    def _record_analytics(self, event_id: str, item, client, user_agent) -> None:
        if self.analytics is None:
            return
        try:
            self.analytics.record(
                f"{item.kind}_upload",
                event_id=event_id,
                properties={
                    "mediaId": item.id,
                    "fileSize": item.size_bytes,
                    "mimeType": item.mime_type,
                    "hasCaption": bool(item.caption),
                    "hasThumbnail": bool(item.thumbnail_ref),
                },
                user_agent=user_agent,
                ip_address=client,
            )
        except Exception:
            logger.warning("analytics.record_failed", extra={"event_id": event_id}, exc_info=True)

    def _log_denied(self, event_id: str, metadata: UploadMetadata, reason: str, client) -> None:
        audit.info(
            "upload.denied",
            extra={
                "event_id": event_id,
                "reason": reason,
                "kind": MediaKind(metadata.media_kind).value,
                "client": client,
            },
        )
