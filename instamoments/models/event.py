import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from instamoments.models.user import Base

EVENT_STATUSES = ("active", "expired", "archived")


def _new_id() -> str:
    return str(uuid.uuid4())


class Event(Base):
    __tablename__ = "Event"
    __table_args__ = (
        CheckConstraint("TotalPhotos >= 0 AND TotalVideos >= 0", name="ck_event_totals_nonneg"),
        CheckConstraint("Status IN ('active', 'expired', 'archived')", name="ck_event_status"),
        Index("ix_event_status_expires", "Status", "ExpiresAt"),
    )

    EventID = Column(String(36), primary_key=True, default=_new_id)
    UserID = Column(Integer, ForeignKey("Users.UserID"), nullable=False)
    Name = Column(String(255), nullable=False)
    Description = Column(String(500), nullable=True)
    EventDate = Column(Date, nullable=True)
    Location = Column(String(200), nullable=True)
    CustomMessage = Column(String(300), nullable=True)
    GallerySlug = Column(String(64), nullable=False, unique=True)
    SubscriptionTier = Column(String(16), nullable=False, default="free")
    Status = Column(String(16), nullable=False, default="active")
    TotalPhotos = Column(Integer, nullable=False, default=0)
    TotalVideos = Column(Integer, nullable=False, default=0)
    TotalContributors = Column(Integer, nullable=False, default=0)
    MaxPhotos = Column(Integer, nullable=False)
    MaxPhotosPerUser = Column(Integer, nullable=False)
    MaxVideos = Column(Integer, nullable=False, default=0)
    HasVideoAddon = Column(Boolean, nullable=False, default=False)
    StorageDays = Column(Integer, nullable=False)
    CreatedAt = Column(DateTime, nullable=False, server_default=func.now())
    ExpiresAt = Column(DateTime, nullable=False)
    UpdatedAt = Column(DateTime, server_default=func.now(), onupdate=func.now())


class EventContributor(Base):
    """Per-contributor upload counts; keyed by email, anonymous guests have none."""

    __tablename__ = "EventContributor"
    __table_args__ = (
        UniqueConstraint("EventID", "ContributorEmail", name="uq_contributor_event_email"),
    )

    ContributorID = Column(Integer, primary_key=True, autoincrement=True)
    EventID = Column(
        String(36), ForeignKey("Event.EventID", ondelete="CASCADE"), nullable=False, index=True
    )
    ContributorEmail = Column(String(255), nullable=False)
    ContributorName = Column(String(50), nullable=False)
    PhotoCount = Column(Integer, nullable=False, default=0)
    VideoCount = Column(Integer, nullable=False, default=0)
    LastContributionAt = Column(DateTime, nullable=True)
    CreatedAt = Column(DateTime, server_default=func.now())
