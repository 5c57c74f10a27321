"""Public gallery reads, addressed by event id or gallery slug."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from db import get_db
from instamoments.core.dependencies import client_ip, get_analytics, get_gallery_service, success
from instamoments.core.settings import settings
from instamoments.core.tiers import expiration_status
from instamoments.core.timeutil import utcnow
from instamoments.services.gallery_query import GalleryQuery, GalleryStats, load_gallery_event

router = APIRouter()
audit = logging.getLogger("audit")


@router.get("/api/gallery/{key}")
async def gallery_info(request: Request, key: str, db: Session = Depends(get_db)):
    now = utcnow()
    event = load_gallery_event(db, key, now)
    analytics = get_analytics(request)
    if analytics is not None:
        analytics.record(
            "gallery_view",
            event_id=event.EventID,
            properties={"slug": event.GallerySlug},
            user_agent=request.headers.get("user-agent"),
            ip_address=client_ip(request),
        )
    status = expiration_status(event.ExpiresAt, now)
    return success(
        {
            "event": {
                "id": event.EventID,
                "name": event.Name,
                "gallerySlug": event.GallerySlug,
                "subscriptionTier": event.SubscriptionTier,
                "hasVideoAddon": bool(event.HasVideoAddon),
                "maxPhotosPerUser": event.MaxPhotosPerUser,
                "createdAt": event.CreatedAt.isoformat() if event.CreatedAt else None,
                "expiresAt": event.ExpiresAt.isoformat(),
                "daysRemaining": status["days_remaining"],
                "isExpiringSoon": status["is_expiring_soon"],
            },
            "stats": GalleryStats.from_event(event).to_dict(),
        }
    )


@router.get("/api/gallery/{key}/media")
async def gallery_media(
    request: Request,
    key: str,
    page: int = Query(0),
    limit: int = Query(settings.GALLERY_DEFAULT_LIMIT),
    search: Optional[str] = Query(None, max_length=100),
    contributor: Optional[str] = Query(None, max_length=50),
    sortBy: str = Query("newest"),  # noqa: N803
    type: str = Query("all"),  # noqa: A002
    db: Session = Depends(get_db),
):
    event = load_gallery_event(db, key)
    q = GalleryQuery(
        page=page,
        limit=limit,
        search=(search or "").strip() or None,
        contributor=contributor,
        sort_by=sortBy,
        media_type=type,
    )
    result = get_gallery_service(request).query(db, event, q)
    return success(result.to_dict())


@router.get("/api/gallery/{key}/stats")
async def gallery_stats(request: Request, key: str, db: Session = Depends(get_db)):
    event = load_gallery_event(db, key)
    return success(get_gallery_service(request).stats(db, event))
