"""
Initial schema: users/sessions, events, media, contributors, rate limits, logs.

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def _media_columns():
    return [
        sa.Column("MediaID", sa.String(length=36), primary_key=True),
        sa.Column(
            "EventID",
            sa.String(length=36),
            sa.ForeignKey("Event.EventID", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("ContributorName", sa.String(length=50), nullable=False),
        sa.Column("ContributorEmail", sa.String(length=255), nullable=True),
        sa.Column("FileRef", sa.String(length=512), nullable=False),
        sa.Column("ThumbnailRef", sa.String(length=512), nullable=True),
        sa.Column("ThumbnailDegraded", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("FileSize", sa.Integer(), nullable=False),
        sa.Column("MimeType", sa.String(length=64), nullable=False),
        sa.Column("Caption", sa.String(length=200), nullable=True),
        sa.Column("IsApproved", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("UploadedAt", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "Users",
        sa.Column("UserID", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("Email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("DisplayName", sa.String(length=100), nullable=True),
        sa.Column("IsActive", sa.Boolean(), nullable=True, server_default=sa.text("1")),
        sa.Column("DateCreated", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("LastUpdated", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_table(
        "UserSession",
        sa.Column("SessionID", sa.String(length=36), primary_key=True),
        sa.Column("UserID", sa.Integer(), sa.ForeignKey("Users.UserID"), nullable=False),
        sa.Column("CreatedAt", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("ExpiresAt", sa.DateTime(), nullable=True),
        sa.Column("IsActive", sa.Boolean(), nullable=True, server_default=sa.text("1")),
        sa.Column("LastSeen", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("IPAddress", sa.String(length=45), nullable=True),
        sa.Column("UserAgent", sa.String(length=255), nullable=True),
    )
    op.create_table(
        "Event",
        sa.Column("EventID", sa.String(length=36), primary_key=True),
        sa.Column("UserID", sa.Integer(), sa.ForeignKey("Users.UserID"), nullable=False),
        sa.Column("Name", sa.String(length=255), nullable=False),
        sa.Column("GallerySlug", sa.String(length=64), nullable=False, unique=True),
        sa.Column("SubscriptionTier", sa.String(length=16), nullable=False),
        sa.Column("Status", sa.String(length=16), nullable=False),
        sa.Column("TotalPhotos", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("TotalVideos", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("TotalContributors", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("MaxPhotos", sa.Integer(), nullable=False),
        sa.Column("MaxPhotosPerUser", sa.Integer(), nullable=False),
        sa.Column("MaxVideos", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("HasVideoAddon", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("StorageDays", sa.Integer(), nullable=False),
        sa.Column("CreatedAt", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("ExpiresAt", sa.DateTime(), nullable=False),
        sa.Column("UpdatedAt", sa.DateTime(), server_default=sa.func.now()),
        sa.CheckConstraint("TotalPhotos >= 0 AND TotalVideos >= 0", name="ck_event_totals_nonneg"),
        sa.CheckConstraint("Status IN ('active', 'expired', 'archived')", name="ck_event_status"),
    )
    op.create_index("ix_event_status_expires", "Event", ["Status", "ExpiresAt"])

    op.create_table("Photo", *_media_columns())
    op.create_index("ix_photo_event_uploaded", "Photo", ["EventID", "UploadedAt"])
    op.create_table(
        "Video",
        *_media_columns(),
        sa.Column("DurationSeconds", sa.Float(), nullable=False),
    )
    op.create_index("ix_video_event_uploaded", "Video", ["EventID", "UploadedAt"])

    op.create_table(
        "EventContributor",
        sa.Column("ContributorID", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "EventID",
            sa.String(length=36),
            sa.ForeignKey("Event.EventID", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("ContributorEmail", sa.String(length=255), nullable=False),
        sa.Column("ContributorName", sa.String(length=50), nullable=False),
        sa.Column("PhotoCount", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("VideoCount", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("LastContributionAt", sa.DateTime(), nullable=True),
        sa.Column("CreatedAt", sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint("EventID", "ContributorEmail", name="uq_contributor_event_email"),
    )
    op.create_index("ix_EventContributor_EventID", "EventContributor", ["EventID"])

    op.create_table(
        "RateLimitCounter",
        sa.Column("Key", sa.String(length=255), primary_key=True),
        sa.Column("WindowStart", sa.DateTime(), nullable=False),
        sa.Column("ResetAt", sa.DateTime(), nullable=False),
        sa.Column("Count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("UpdatedAt", sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        "AppErrorLog",
        sa.Column("ErrorID", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("OccurredAt", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("RequestID", sa.String(length=64), nullable=True),
        sa.Column("Path", sa.String(length=500), nullable=True),
        sa.Column("Method", sa.String(length=16), nullable=True),
        sa.Column("StatusCode", sa.Integer(), nullable=True),
        sa.Column("UserID", sa.Integer(), nullable=True),
        sa.Column("ClientIP", sa.String(length=45), nullable=True),
        sa.Column("UserAgent", sa.String(length=255), nullable=True),
        sa.Column("Message", sa.Text(), nullable=True),
        sa.Column("StackTrace", sa.Text(), nullable=True),
    )
    op.create_table(
        "AnalyticsEvent",
        sa.Column("AnalyticsEventID", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("EventID", sa.String(length=36), nullable=True),
        sa.Column("EventType", sa.String(length=64), nullable=False),
        sa.Column("Properties", sa.Text(), nullable=True),
        sa.Column("UserAgent", sa.String(length=255), nullable=True),
        sa.Column("IPAddress", sa.String(length=45), nullable=True),
        sa.Column("CreatedAt", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_AnalyticsEvent_EventID", "AnalyticsEvent", ["EventID"])


def downgrade() -> None:
    op.drop_index("ix_AnalyticsEvent_EventID", table_name="AnalyticsEvent")
    op.drop_table("AnalyticsEvent")
    op.drop_table("AppErrorLog")
    op.drop_table("RateLimitCounter")
    op.drop_index("ix_EventContributor_EventID", table_name="EventContributor")
    op.drop_table("EventContributor")
    op.drop_index("ix_video_event_uploaded", table_name="Video")
    op.drop_table("Video")
    op.drop_index("ix_photo_event_uploaded", table_name="Photo")
    op.drop_table("Photo")
    op.drop_index("ix_event_status_expires", table_name="Event")
    op.drop_table("Event")
    op.drop_table("UserSession")
    op.drop_table("Users")
