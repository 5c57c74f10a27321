"""Host-scoped event management and the expiration sweep trigger."""

import hmac
import logging

from fastapi import APIRouter, Body, Depends, Query, Request
from sqlalchemy.orm import Session

from db import get_db
from instamoments.core import errors
from instamoments.core.dependencies import get_pipeline, get_realtime, get_sweeper, success
from instamoments.core.settings import settings
from instamoments.core.tiers import (
    calculate_total_price,
    expiration_status,
    upgrade_recommendations,
)
from instamoments.core.timeutil import utcnow
from instamoments.schemas import (
    EventCreate,
    EventDetailsUpdate,
    EventUpgrade,
    MediaUpdate,
    parse_model,
)
from instamoments.services.auth import get_user_id_from_request, require_user
from instamoments.services.events import (
    create_event,
    delete_event,
    get_owned_event,
    list_host_events,
    update_event_details,
)
from instamoments.services.gallery_query import GalleryStats

router = APIRouter()
audit = logging.getLogger("audit")


def _event_dict(event, now=None) -> dict:
    now = now or utcnow()
    status = expiration_status(event.ExpiresAt, now)
    return {
        "id": event.EventID,
        "name": event.Name,
        "description": event.Description,
        "eventDate": event.EventDate.isoformat() if event.EventDate else None,
        "location": event.Location,
        "customMessage": event.CustomMessage,
        "gallerySlug": event.GallerySlug,
        "subscriptionTier": event.SubscriptionTier,
        "status": event.Status,
        "limits": {
            "maxPhotos": event.MaxPhotos,
            "maxPhotosPerUser": event.MaxPhotosPerUser,
            "maxVideos": event.MaxVideos,
            "hasVideoAddon": bool(event.HasVideoAddon),
            "storageDays": event.StorageDays,
        },
        "stats": GalleryStats.from_event(event).to_dict(),
        "createdAt": event.CreatedAt.isoformat() if event.CreatedAt else None,
        "expiresAt": event.ExpiresAt.isoformat(),
        "updatedAt": event.UpdatedAt.isoformat() if event.UpdatedAt else None,
        "daysRemaining": status["days_remaining"],
        "isExpired": status["is_expired"],
        "isExpiringSoon": status["is_expiring_soon"],
    }


@router.post("/api/events")
async def create_event_api(
    payload: dict = Body(...),
    db: Session = Depends(get_db),
    user_id: int = Depends(require_user),
):
    body = parse_model(EventCreate, payload)
    event = create_event(
        db, user_id, body.name, tier=body.tier, has_video_addon=body.has_video_addon
    )
    data = _event_dict(event)
    data["priceCents"] = calculate_total_price(body.tier, body.has_video_addon)
    return success(data, status_code=201)


@router.get("/api/events")
async def list_events_api(db: Session = Depends(get_db), user_id: int = Depends(require_user)):
    now = utcnow()
    return success({"events": [_event_dict(e, now) for e in list_host_events(db, user_id)]})


@router.get("/api/events/expiration")
async def expiration_status_api(
    request: Request,
    hoursThreshold: int = Query(settings.EXPIRING_SOON_HOURS, ge=1, le=24 * 30),  # noqa: N803
    db: Session = Depends(get_db),
):
    _require_sweep_access(request, db)
    events = get_sweeper(request).find_expiring_soon(db, hoursThreshold)
    return success(
        {
            "expiringSoon": len(events),
            "events": [
                {
                    "id": e.EventID,
                    "name": e.Name,
                    "hostId": e.UserID,
                    "gallerySlug": e.GallerySlug,
                    "subscriptionTier": e.SubscriptionTier,
                    "totalPhotos": e.TotalPhotos,
                    "totalVideos": e.TotalVideos,
                    "expiresAt": e.ExpiresAt.isoformat(),
                }
                for e in events
            ],
        }
    )


@router.post("/api/events/expiration")
async def run_expiration_api(
    request: Request,
    deleteContent: bool = Query(False),  # noqa: N803
    hoursThreshold: int = Query(settings.EXPIRING_SOON_HOURS, ge=1, le=24 * 30),  # noqa: N803
    db: Session = Depends(get_db),
):
    _require_sweep_access(request, db)
    audit.info("sweep.triggered", extra={"delete_content": deleteContent})
    sweeper = get_sweeper(request)
    stats = sweeper.sweep(db, delete_content=deleteContent)
    soon = sweeper.find_expiring_soon(db, hoursThreshold)
    return success(
        {
            "processed": stats.to_dict(),
            "expiringSoon": len(soon),
            "expiringEvents": [
                {"id": e.EventID, "name": e.Name, "expiresAt": e.ExpiresAt.isoformat()}
                for e in soon
            ],
        }
    )


def _require_sweep_access(request: Request, db: Session) -> None:
    """Scheduler calls carry X-Sweep-Token; otherwise a signed-in host is required."""
    token = settings.SWEEP_TRIGGER_TOKEN
    supplied = request.headers.get("x-sweep-token") or ""
    if token and hmac.compare_digest(token, supplied):
        return
    if get_user_id_from_request(request, db) is None:
        raise errors.AuthRequired()


@router.get("/api/events/{event_id}")
async def get_event_api(
    event_id: str, db: Session = Depends(get_db), user_id: int = Depends(require_user)
):
    event = get_owned_event(db, event_id, user_id)
    now = utcnow()
    data = _event_dict(event, now)
    data["recommendations"] = upgrade_recommendations(
        event.SubscriptionTier,
        int(event.TotalPhotos or 0),
        int(event.TotalVideos or 0),
        expiration_status(event.ExpiresAt, now)["days_remaining"],
    )
    return success(data)


@router.put("/api/events/{event_id}")
async def update_event_api(
    event_id: str,
    payload: dict = Body(...),
    db: Session = Depends(get_db),
    user_id: int = Depends(require_user),
):
    body = parse_model(EventDetailsUpdate, payload)
    event = get_owned_event(db, event_id, user_id)
    changes = {name: getattr(body, name) for name in body.model_fields_set}
    return success(_event_dict(update_event_details(db, event, changes)))


@router.delete("/api/events/{event_id}")
async def delete_event_api(
    request: Request,
    event_id: str,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_user),
):
    event = get_owned_event(db, event_id, user_id)
    deleted = delete_event(db, event, realtime=get_realtime(request))
    return success({"deleted": deleted})


@router.post("/api/events/{event_id}/archive")
async def archive_event_api(
    request: Request,
    event_id: str,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_user),
):
    event = get_owned_event(db, event_id, user_id)
    return success(_event_dict(get_sweeper(request).archive(db, event)))


@router.post("/api/events/{event_id}/restore")
async def restore_event_api(
    request: Request,
    event_id: str,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_user),
):
    event = get_owned_event(db, event_id, user_id)
    return success(_event_dict(get_sweeper(request).restore(db, event)))


@router.post("/api/events/{event_id}/upgrade")
async def upgrade_event_api(
    request: Request,
    event_id: str,
    payload: dict = Body(...),
    db: Session = Depends(get_db),
    user_id: int = Depends(require_user),
):
    body = parse_model(EventUpgrade, payload)
    event = get_owned_event(db, event_id, user_id)
    previous_tier = event.SubscriptionTier
    event = get_sweeper(request).extend_expiration(
        db, event, body.tier, has_video_addon=body.has_video_addon
    )
    data = _event_dict(event)
    data["previousTier"] = previous_tier
    data["priceCents"] = calculate_total_price(event.SubscriptionTier, bool(event.HasVideoAddon))
    return success(data)


@router.patch("/api/events/{event_id}/media/{media_id}")
async def update_media_api(
    request: Request,
    event_id: str,
    media_id: str,
    payload: dict = Body(...),
    db: Session = Depends(get_db),
    user_id: int = Depends(require_user),
):
    body = parse_model(MediaUpdate, payload)
    event = get_owned_event(db, event_id, user_id)
    kwargs = {}
    if "caption" in body.model_fields_set:
        kwargs["caption"] = body.caption
    if body.approved is not None:
        kwargs["approved"] = body.approved
    item = get_pipeline(request).update_media(db, event, media_id, **kwargs)
    return success({"item": item.model_dump(mode="json")})


@router.delete("/api/events/{event_id}/media/{media_id}")
async def delete_media_api(
    request: Request,
    event_id: str,
    media_id: str,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_user),
):
    event = get_owned_event(db, event_id, user_id)
    item = get_pipeline(request).delete_media(db, event, media_id)
    return success({"deleted": item.id, "kind": item.kind})
