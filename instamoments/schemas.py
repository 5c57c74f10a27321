"""Pydantic models for upload requests and the Photo|Video media variant."""

from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Literal, Optional, Union
from uuid import UUID

from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from instamoments.core.errors import ValidationFailed
from instamoments.services.quota import MediaKind


class UploadMetadata(BaseModel):
    """Form fields of an upload, validated before any side effect."""

    event_id: UUID
    contributor_name: str = Field(..., min_length=1, max_length=50)
    contributor_email: Optional[EmailStr] = None
    caption: Optional[str] = Field(None, max_length=200)
    media_kind: MediaKind = MediaKind.PHOTO
    duration_seconds: Optional[float] = Field(None, ge=0)

    @field_validator("contributor_name", mode="before")
    @classmethod
    def _strip_name(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("contributor_email", "caption", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @field_validator("contributor_email")
    @classmethod
    def _lower_email(cls, v):
        if v is None:
            return v
        if len(v) > 100:
            raise ValueError("Email must be at most 100 characters")
        return v.lower()


class _MediaBase(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    event_id: str
    contributor_name: str
    contributor_email: Optional[str] = None
    file_ref: str
    thumbnail_ref: Optional[str] = None
    thumbnail_degraded: bool = False
    size_bytes: int
    mime_type: str
    caption: Optional[str] = None
    approved: bool = True
    uploaded_at: datetime
    file_url: Optional[str] = None
    thumbnail_url: Optional[str] = None


class PhotoItem(_MediaBase):
    kind: Literal["photo"] = "photo"


class VideoItem(_MediaBase):
    kind: Literal["video"] = "video"
    duration_seconds: float


MediaItem = Annotated[Union[PhotoItem, VideoItem], Field(discriminator="kind")]
_media_adapter = TypeAdapter(MediaItem)


def media_from_row(row, storage=None) -> Union[PhotoItem, VideoItem]:
    """Build the tagged variant from a Photo or Video ORM row."""
    data = {
        "kind": "video" if hasattr(row, "DurationSeconds") else "photo",
        "id": row.MediaID,
        "event_id": row.EventID,
        "contributor_name": row.ContributorName,
        "contributor_email": row.ContributorEmail,
        "file_ref": row.FileRef,
        "thumbnail_ref": row.ThumbnailRef,
        "thumbnail_degraded": bool(row.ThumbnailDegraded),
        "size_bytes": int(row.FileSize or 0),
        "mime_type": row.MimeType,
        "caption": row.Caption,
        "approved": bool(row.IsApproved),
        "uploaded_at": row.UploadedAt,
    }
    if data["kind"] == "video":
        data["duration_seconds"] = float(row.DurationSeconds or 0)
    if storage is not None:
        data["file_url"] = storage.url(row.FileRef)
        data["thumbnail_url"] = storage.url(row.ThumbnailRef)
    return _media_adapter.validate_python(data)


def public_media_dict(item) -> dict:
    """JSON shape sent to gallery viewers; contributor emails stay private."""
    return item.model_dump(mode="json", exclude={"contributor_email", "file_ref", "thumbnail_ref"})


class EventCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    tier: str = "free"
    has_video_addon: bool = Field(False, alias="hasVideoAddon")

    model_config = ConfigDict(populate_by_name=True)


class EventDetailsUpdate(BaseModel):
    """Partial update of host-editable details; tier changes go through upgrade."""

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=500)
    event_date: Optional[date] = Field(None, alias="eventDate")
    location: Optional[str] = Field(None, max_length=200)
    custom_message: Optional[str] = Field(None, max_length=300, alias="customMessage")

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    @field_validator("name", "description", "location", "custom_message", mode="before")
    @classmethod
    def _strip(cls, v):
        return v.strip() if isinstance(v, str) else v


class EventUpgrade(BaseModel):
    tier: str
    has_video_addon: Optional[bool] = Field(None, alias="hasVideoAddon")

    model_config = ConfigDict(populate_by_name=True)


class MediaUpdate(BaseModel):
    caption: Optional[str] = Field(None, max_length=200)
    approved: Optional[bool] = None


def validation_details(exc: ValidationError) -> list:
    return [
        {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
        for err in exc.errors()
    ]


def parse_model(model, data: dict):
    """Validate `data` into `model`, raising VALIDATION_ERROR with per-field details."""
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ValidationFailed(details={"errors": validation_details(e)}) from e
