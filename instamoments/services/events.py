"""Event creation and editing, plus host-scoped lookups."""

import logging
import re
import secrets
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from instamoments.core import errors
from instamoments.core.tiers import calculate_expiration, event_quotas, is_known_tier
from instamoments.core.timeutil import utcnow
from instamoments.models.event import Event, EventContributor
from instamoments.models.media import Photo, Video

logger = logging.getLogger(__name__)
audit = logging.getLogger("audit")

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def make_gallery_slug(name: str) -> str:
    base = _SLUG_STRIP.sub("-", (name or "").lower()).strip("-")[:40] or "gallery"
    return f"{base}-{secrets.token_hex(3)}"


def create_event(
    db: Session,
    host_id: int,
    name: str,
    tier: str = "free",
    has_video_addon: bool = False,
    now: Optional[datetime] = None,
) -> Event:
    """Create an active event with quotas and expiry derived from its tier."""
    name = (name or "").strip()
    if not name or len(name) > 255:
        raise errors.ValidationFailed("Event name must be 1-255 characters")
    if not is_known_tier(tier):
        raise errors.ValidationFailed(f"Unknown subscription tier '{tier}'")
    now = now or utcnow()
    quotas = event_quotas(tier, has_video_addon)

    for _attempt in range(3):
        event = Event(
            UserID=host_id,
            Name=name,
            GallerySlug=make_gallery_slug(name),
            SubscriptionTier=tier,
            Status="active",
            TotalPhotos=0,
            TotalVideos=0,
            TotalContributors=0,
            MaxPhotos=quotas["max_photos"],
            MaxPhotosPerUser=quotas["max_photos_per_user"],
            MaxVideos=quotas["max_videos"],
            HasVideoAddon=quotas["max_videos"] > 0,
            StorageDays=quotas["storage_days"],
            CreatedAt=now,
            ExpiresAt=calculate_expiration(now, tier),
            UpdatedAt=now,
        )
        db.add(event)
        try:
            db.commit()
        except IntegrityError:
            # slug collision; try another suffix
            db.rollback()
            continue
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("event.create_failed")
            raise errors.DatabaseError() from e
        db.refresh(event)
        audit.info(
            "event.created",
            extra={"event_id": event.EventID, "user_id": host_id, "tier": tier},
        )
        return event
    raise errors.DatabaseError("Could not allocate a gallery link; please retry")


def get_event(db: Session, event_id: str) -> Event:
    event = db.query(Event).filter(Event.EventID == str(event_id)).first()
    if event is None:
        raise errors.GalleryNotFound()
    return event


def get_owned_event(db: Session, event_id: str, user_id: int) -> Event:
    event = get_event(db, event_id)
    if int(event.UserID) != int(user_id):
        raise errors.Forbidden()
    return event


def list_host_events(db: Session, user_id: int):
    return (
        db.query(Event)
        .filter(Event.UserID == user_id)
        .order_by(Event.CreatedAt.desc())
        .all()
    )


_DETAIL_COLUMNS = {
    "name": "Name",
    "description": "Description",
    "event_date": "EventDate",
    "location": "Location",
    "custom_message": "CustomMessage",
}


def update_event_details(db: Session, event: Event, changes: dict, now: Optional[datetime] = None) -> Event:
    """Apply a partial update of the descriptive fields.

    Expired events are frozen; `changes` holds only the fields the caller
    sent, so an explicit None clears an optional field.
    """
    if event.Status == "expired":
        raise errors.GalleryExpired("Cannot update expired events")
    if "name" in changes and not changes["name"]:
        raise errors.ValidationFailed("Event name must be 1-255 characters")
    unknown = set(changes) - set(_DETAIL_COLUMNS)
    if unknown:
        raise errors.ValidationFailed(f"Cannot update {', '.join(sorted(unknown))}")

    for field, value in changes.items():
        if isinstance(value, str) and field != "name":
            value = value or None
        setattr(event, _DETAIL_COLUMNS[field], value)
    event.UpdatedAt = now or utcnow()
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("event.update_failed", extra={"event_id": event.EventID})
        raise errors.DatabaseError("Failed to update event") from e
    db.refresh(event)
    audit.info(
        "event.updated",
        extra={"event_id": event.EventID, "fields": sorted(changes)},
    )
    return event


def delete_event(db: Session, event: Event, realtime=None) -> str:
    """Delete an event that never received content; anything else must be archived."""
    photos = db.query(Photo).filter(Photo.EventID == event.EventID).count()
    videos = db.query(Video).filter(Video.EventID == event.EventID).count()
    if photos or videos:
        raise errors.EventHasContent(details={"photos": photos, "videos": videos})

    event_id, host_id = event.EventID, event.UserID
    try:
        db.query(EventContributor).filter(EventContributor.EventID == event_id).delete(
            synchronize_session=False
        )
        db.delete(event)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("event.delete_failed", extra={"event_id": event_id})
        raise errors.DatabaseError("Failed to delete event") from e

    if realtime is not None:
        realtime.close_event(event_id, "gallery_deleted")
    audit.info("event.deleted", extra={"event_id": event_id, "user_id": host_id})
    return event_id
