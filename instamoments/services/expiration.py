"""Event expiry: the periodic sweep plus tier extension and archive/restore.

Status transitions:

    active -> expired      sweep only, once ExpiresAt has passed
    active <-> archived    host action, content untouched
    expired                terminal; extension of an expired event is refused

Only one sweep runs at a time per process (a non-blocking lock; the
scheduler also uses max_instances=1). Each event is its own unit of failure:
an error while expiring or deleting one event is logged and the sweep moves
on. Re-running is safe because already-expired events no longer match the
``Status == 'active'`` filter. An expired event whose content delete failed
keeps its media rows; the next deleting sweep picks it up again.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import exists, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from instamoments.core import errors
from instamoments.core.tiers import event_quotas, get_tier_limits, is_known_tier, tier_rank
from instamoments.core.timeutil import utcnow
from instamoments.models.event import Event, EventContributor
from instamoments.models.media import Photo, Video

logger = logging.getLogger(__name__)
audit = logging.getLogger("audit")


@dataclass
class EventSweepResult:
    event_id: str
    photos_deleted: int = 0
    videos_deleted: int = 0
    storage_freed: int = 0
    blob_failures: int = 0
    newly_expired: bool = True


@dataclass
class SweepStats:
    total_expired: int = 0
    total_photos_deleted: int = 0
    total_videos_deleted: int = 0
    total_storage_freed: int = 0
    failed: List[str] = field(default_factory=list)
    skipped: bool = False

    def add(self, result: EventSweepResult) -> None:
        if result.newly_expired:
            self.total_expired += 1
        self.total_photos_deleted += result.photos_deleted
        self.total_videos_deleted += result.videos_deleted
        self.total_storage_freed += result.storage_freed

    def to_dict(self) -> dict:
        return {
            "totalExpired": self.total_expired,
            "totalPhotosDeleted": self.total_photos_deleted,
            "totalVideosDeleted": self.total_videos_deleted,
            "totalStorageFreed": self.total_storage_freed,
            "failedEvents": list(self.failed),
            "skipped": self.skipped,
        }


class ExpirationSweeper:
    def __init__(
        self,
        storage,
        session_factory: Optional[Callable[[], Session]] = None,
        realtime=None,
        max_workers: int = 1,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.session_factory = session_factory
        self.realtime = realtime
        self.max_workers = max(1, int(max_workers))
        self.clock = clock
        self._running = threading.Lock()

    # -- queries -------------------------------------------------------------

    def find_expired(self, db: Session, now: Optional[datetime] = None) -> List[Event]:
        now = now or self.clock()
        return (
            db.query(Event)
            .filter(Event.Status == "active", Event.ExpiresAt < now)
            .order_by(Event.ExpiresAt.asc())
            .all()
        )

    def find_content_pending(self, db: Session) -> List[str]:
        """Expired events that still hold media rows after a failed content delete."""
        rows = (
            db.query(Event.EventID)
            .filter(
                Event.Status == "expired",
                or_(
                    exists().where(Photo.EventID == Event.EventID),
                    exists().where(Video.EventID == Event.EventID),
                ),
            )
            .order_by(Event.ExpiresAt.asc())
            .all()
        )
        return [r[0] for r in rows]

    def find_expiring_soon(self, db: Session, threshold_hours: int = 24) -> List[Event]:
        """Active events whose expiry falls within the next `threshold_hours`. Read-only."""
        now = self.clock()
        return (
            db.query(Event)
            .filter(
                Event.Status == "active",
                Event.ExpiresAt >= now,
                Event.ExpiresAt <= now + timedelta(hours=threshold_hours),
            )
            .order_by(Event.ExpiresAt.asc())
            .all()
        )

    # -- per-event steps -------------------------------------------------------

    def mark_expired(self, db: Session, event_id: str, now: datetime) -> bool:
        """active -> expired; False if another writer already moved the event."""
        res = db.execute(
            update(Event)
            .where(Event.EventID == event_id, Event.Status == "active")
            .values(Status="expired", UpdatedAt=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return bool(res.rowcount)

    def delete_event_content(self, db: Session, event_id: str) -> EventSweepResult:
        """Delete blobs (best-effort) and media rows (must succeed) for one event."""
        result = EventSweepResult(event_id=event_id)
        photos = db.query(Photo).filter(Photo.EventID == event_id).all()
        videos = db.query(Video).filter(Video.EventID == event_id).all()

        for row in list(photos) + list(videos):
            for ref in (row.FileRef, row.ThumbnailRef):
                if ref and not self.storage.delete(ref):
                    result.blob_failures += 1
            result.storage_freed += int(row.FileSize or 0)

        try:
            result.photos_deleted = (
                db.query(Photo).filter(Photo.EventID == event_id).delete(synchronize_session=False)
            )
            result.videos_deleted = (
                db.query(Video).filter(Video.EventID == event_id).delete(synchronize_session=False)
            )
            db.query(EventContributor).filter(EventContributor.EventID == event_id).delete(
                synchronize_session=False
            )
            db.execute(
                update(Event)
                .where(Event.EventID == event_id)
                .values(TotalPhotos=0, TotalVideos=0, TotalContributors=0, UpdatedAt=self.clock())
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise errors.DatabaseError(f"Failed to delete content for event {event_id}") from e

        if result.blob_failures:
            logger.warning(
                "sweep.blob_delete_failed",
                extra={"event_id": event_id, "failures": result.blob_failures},
            )
        return result

    def _process(self, db: Session, event_id: str, delete_content: bool, now: datetime, pending: bool = False):
        if not pending:
            if not self.mark_expired(db, event_id, now):
                return None
            if self.realtime is not None:
                self.realtime.close_event(event_id, "gallery_expired")
        if not delete_content:
            return EventSweepResult(event_id=event_id)
        try:
            result = self.delete_event_content(db, event_id)
        except Exception:
            # Status is already expired; the rows stay for the next sweep
            logger.error("sweep.content_pending", extra={"event_id": event_id})
            raise
        result.newly_expired = not pending
        return result

    def _process_isolated(self, db: Optional[Session], event_id: str, delete_content: bool, now, pending=False):
        own = db is None
        session = self.session_factory() if own else db
        try:
            return self._process(session, event_id, delete_content, now, pending), None
        except Exception as e:
            try:
                session.rollback()
            except SQLAlchemyError:
                pass
            audit.error(
                "sweep.event.failed",
                extra={"event_id": event_id, "error": str(e)},
                exc_info=True,
            )
            return None, event_id
        finally:
            if own:
                session.close()

    # -- batch -------------------------------------------------------------------

    def sweep(self, db: Optional[Session] = None, delete_content: bool = False) -> SweepStats:
        """Expire every overdue active event; optionally delete its content.

        With an explicit session the events are processed sequentially on it;
        otherwise each event gets its own session, spread over up to
        `max_workers` threads.
        """
        if not self._running.acquire(blocking=False):
            logger.info("sweep.skipped_already_running")
            return SweepStats(skipped=True)
        try:
            return self._sweep(db, delete_content)
        finally:
            self._running.release()

    def _sweep(self, db: Optional[Session], delete_content: bool) -> SweepStats:
        now = self.clock()
        stats = SweepStats()
        if db is None:
            if self.session_factory is None:
                raise RuntimeError("sweep() needs a session or a session_factory")
            lookup = self.session_factory()
            try:
                event_ids = [e.EventID for e in self.find_expired(lookup, now)]
                pending_ids = self.find_content_pending(lookup) if delete_content else []
            finally:
                lookup.close()
        else:
            event_ids = [e.EventID for e in self.find_expired(db, now)]
            pending_ids = self.find_content_pending(db) if delete_content else []

        audit.info(
            "sweep.start",
            extra={
                "candidates": len(event_ids),
                "content_pending": len(pending_ids),
                "delete_content": delete_content,
            },
        )

        if db is None and self.max_workers > 1 and len(event_ids) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="sweep") as pool:
                outcomes = list(
                    pool.map(lambda eid: self._process_isolated(None, eid, delete_content, now), event_ids)
                )
        else:
            outcomes = [self._process_isolated(db, eid, delete_content, now) for eid in event_ids]
        outcomes += [self._process_isolated(db, eid, True, now, pending=True) for eid in pending_ids]

        for result, failed in outcomes:
            if failed:
                stats.failed.append(failed)
            elif result is not None:
                stats.add(result)

        audit.info("sweep.finished", extra=stats.to_dict())
        return stats

    # -- host actions -------------------------------------------------------------

    def extend_expiration(
        self,
        db: Session,
        event: Event,
        new_tier: str,
        has_video_addon: Optional[bool] = None,
    ) -> Event:
        """Move an event to a higher tier; ExpiresAt restarts from now.

        Expired events are refused and status is never changed here. Archived
        events may be upgraded and remain archived.
        """
        if event.Status == "expired":
            raise errors.GalleryExpired("Expired galleries cannot be extended")
        if not is_known_tier(new_tier):
            raise errors.ValidationFailed(f"Unknown subscription tier '{new_tier}'")

        addon = bool(event.HasVideoAddon) if has_video_addon is None else bool(has_video_addon)
        current = event.SubscriptionTier
        adds_video = addon and not event.HasVideoAddon
        if tier_rank(new_tier) < tier_rank(current) or (
            tier_rank(new_tier) == tier_rank(current) and not adds_video
        ):
            raise errors.ValidationFailed(
                f"Cannot change from {current} to {new_tier}; only upgrades are allowed"
            )
        if adds_video and not get_tier_limits(new_tier)["has_video_addon"]:
            raise errors.ValidationFailed(f"Video addon is not available on the {new_tier} tier")

        quotas = event_quotas(new_tier, addon)
        if int(event.TotalPhotos or 0) > quotas["max_photos"]:
            raise errors.ValidationFailed(
                f"Event already has {event.TotalPhotos} photos; {new_tier} allows {quotas['max_photos']}"
            )
        if int(event.TotalVideos or 0) > quotas["max_videos"]:
            raise errors.ValidationFailed(
                f"Event already has {event.TotalVideos} videos; {new_tier} allows {quotas['max_videos']}"
            )

        now = self.clock()
        previous_expiry = event.ExpiresAt
        event.SubscriptionTier = new_tier
        event.MaxPhotos = quotas["max_photos"]
        event.MaxPhotosPerUser = quotas["max_photos_per_user"]
        event.MaxVideos = quotas["max_videos"]
        event.HasVideoAddon = quotas["max_videos"] > 0
        event.StorageDays = quotas["storage_days"]
        event.ExpiresAt = now + timedelta(days=quotas["storage_days"])
        event.UpdatedAt = now
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("event.extend_failed", extra={"event_id": event.EventID})
            raise errors.DatabaseError() from e
        db.refresh(event)
        audit.info(
            "event.extended",
            extra={
                "event_id": event.EventID,
                "from_tier": current,
                "to_tier": new_tier,
                "previous_expires_at": previous_expiry.isoformat() if previous_expiry else None,
                "expires_at": event.ExpiresAt.isoformat(),
            },
        )
        return event

    def _set_status(self, db: Session, event: Event, expected: str, target: str) -> Event:
        if event.Status == "expired":
            raise errors.GalleryExpired()
        if event.Status != expected:
            raise errors.ValidationFailed(f"Event is {event.Status}, expected {expected}")
        res = db.execute(
            update(Event)
            .where(Event.EventID == event.EventID, Event.Status == expected)
            .values(Status=target, UpdatedAt=self.clock())
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            db.rollback()
            raise errors.ValidationFailed("Event status changed concurrently; reload and retry")
        db.commit()
        db.refresh(event)
        audit.info(f"event.{'archived' if target == 'archived' else 'restored'}", extra={"event_id": event.EventID})
        return event

    def archive(self, db: Session, event: Event) -> Event:
        event = self._set_status(db, event, "active", "archived")
        if self.realtime is not None:
            self.realtime.close_event(event.EventID, "gallery_archived")
        return event

    def restore(self, db: Session, event: Event) -> Event:
        return self._set_status(db, event, "archived", "active")
