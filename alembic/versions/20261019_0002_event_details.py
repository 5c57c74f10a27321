"""
Event details editable by the host: description, date, location, message.

Revision ID: 20261019_0002
Revises: 20261019_0001
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("Event", sa.Column("Description", sa.String(length=500), nullable=True))
    op.add_column("Event", sa.Column("EventDate", sa.Date(), nullable=True))
    op.add_column("Event", sa.Column("Location", sa.String(length=200), nullable=True))
    op.add_column("Event", sa.Column("CustomMessage", sa.String(length=300), nullable=True))


def downgrade() -> None:
    op.drop_column("Event", "CustomMessage")
    op.drop_column("Event", "Location")
    op.drop_column("Event", "EventDate")
    op.drop_column("Event", "Description")
