import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String
from sqlalchemy.orm import declared_attr

from instamoments.models.user import Base


class _MediaColumns:
    MediaID = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    @declared_attr
    def EventID(cls):  # noqa: N802, N805
        return Column(
            String(36), ForeignKey("Event.EventID", ondelete="CASCADE"), nullable=False
        )

    ContributorName = Column(String(50), nullable=False)
    ContributorEmail = Column(String(255), nullable=True)
    FileRef = Column(String(512), nullable=False)
    ThumbnailRef = Column(String(512), nullable=True)
    # Set when the thumbnail write failed and the item was stored without one
    ThumbnailDegraded = Column(Boolean, nullable=False, default=False)
    FileSize = Column(Integer, nullable=False)  # Size in bytes
    MimeType = Column(String(64), nullable=False)
    Caption = Column(String(200), nullable=True)
    IsApproved = Column(Boolean, nullable=False, default=True)
    UploadedAt = Column(DateTime, nullable=False)


class Photo(_MediaColumns, Base):
    __tablename__ = "Photo"
    __table_args__ = (Index("ix_photo_event_uploaded", "EventID", "UploadedAt"),)


class Video(_MediaColumns, Base):
    __tablename__ = "Video"
    __table_args__ = (Index("ix_video_event_uploaded", "EventID", "UploadedAt"),)

    DurationSeconds = Column(Float, nullable=False)


MEDIA_MODELS = {"photo": Photo, "video": Video}
