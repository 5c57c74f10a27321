"""Guest upload endpoints (multipart)."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from sqlalchemy.orm import Session

from db import get_db
from instamoments.core import errors
from instamoments.core.dependencies import client_ip, get_pipeline, get_rate_limiter, success
from instamoments.core.timeutil import epoch_seconds
from instamoments.schemas import UploadMetadata, parse_model
from instamoments.services.auth import get_user_id_from_request
from instamoments.services.ingestion import IncomingFile, client_identity
from instamoments.services.quota import MediaKind

router = APIRouter()
audit = logging.getLogger("audit")


async def _read(upload: Optional[UploadFile], max_bytes: int) -> Optional[IncomingFile]:
    if upload is None:
        return None
    # One byte past the cap is enough to reject oversize files without buffering them whole
    data = await upload.read(max_bytes + 1)
    return IncomingFile(data=data, content_type=upload.content_type, filename=upload.filename)


def _rate_meta(result) -> dict:
    return {"rateLimit": {"remaining": result.remaining, "resetAt": result.reset_at.isoformat()}}


def _rate_headers(result) -> dict:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(epoch_seconds(result.reset_at)),
    }


async def _handle_upload(
    request: Request,
    db: Session,
    kind: MediaKind,
    file: UploadFile,
    thumbnail: Optional[UploadFile],
    fields: dict,
):
    pipeline = get_pipeline(request)
    limiter = get_rate_limiter(request)
    user_id = get_user_id_from_request(request, db)
    identity = client_identity(request.headers, client_ip(request), user_id=user_id)

    rl = limiter.allow(identity)
    if not rl.allowed:
        audit.info(
            "upload.rate_limited",
            extra={
                "identity": identity,
                "reset_at": rl.reset_at.isoformat(),
                "request_id": getattr(request.state, "request_id", None),
            },
        )
        raise errors.RateLimitExceeded(limit=rl.limit, remaining=rl.remaining, reset_at=rl.reset_at)

    metadata = parse_model(UploadMetadata, {**fields, "media_kind": kind})
    limits = pipeline.limits
    max_bytes = limits.max_video_bytes if kind is MediaKind.VIDEO else limits.max_photo_bytes
    incoming = await _read(file, max_bytes)
    thumb = await _read(thumbnail, limits.max_thumbnail_bytes)

    item = pipeline.upload(
        db,
        metadata,
        incoming,
        thumb,
        client=identity,
        user_agent=request.headers.get("user-agent"),
    )
    data = {
        "mediaId": item.id,
        "kind": item.kind,
        "fileUrl": item.file_url,
        "thumbnailUrl": item.thumbnail_url,
        "thumbnailDegraded": item.thumbnail_degraded,
    }
    return success(data, meta=_rate_meta(rl), status_code=201, headers=_rate_headers(rl))


@router.post("/api/upload/photo")
async def upload_photo(
    request: Request,
    file: UploadFile = File(...),
    thumbnail: Optional[UploadFile] = File(None),
    eventId: str = Form(...),  # noqa: N803
    contributorName: str = Form(""),  # noqa: N803
    contributorEmail: Optional[str] = Form(None),  # noqa: N803
    caption: Optional[str] = Form(None),
    db: Session = Depends(get_db),
):
    fields = {
        "event_id": eventId,
        "contributor_name": contributorName,
        "contributor_email": contributorEmail,
        "caption": caption,
    }
    return await _handle_upload(request, db, MediaKind.PHOTO, file, thumbnail, fields)


@router.post("/api/upload/video")
async def upload_video(
    request: Request,
    file: UploadFile = File(...),
    thumbnail: Optional[UploadFile] = File(None),
    eventId: str = Form(...),  # noqa: N803
    contributorName: str = Form(""),  # noqa: N803
    contributorEmail: Optional[str] = Form(None),  # noqa: N803
    caption: Optional[str] = Form(None),
    durationSeconds: Optional[float] = Form(None),  # noqa: N803
    db: Session = Depends(get_db),
):
    fields = {
        "event_id": eventId,
        "contributor_name": contributorName,
        "contributor_email": contributorEmail,
        "caption": caption,
        "duration_seconds": durationSeconds,
    }
    return await _handle_upload(request, db, MediaKind.VIDEO, file, thumbnail, fields)
