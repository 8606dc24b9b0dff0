"""Delivery mark on the notification outbox.

Revision ID: 002_notification_processed_on
Revises: 001_event_store_schema
Create Date: 2024-02-01 00:00:00.000000
"""
from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "002_notification_processed_on"
down_revision: Union[str, None] = "001_event_store_schema"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "notification_events",
        sa.Column("processed_on", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_notification_events_processed_on",
        "notification_events",
        ["processed_on"],
    )


def downgrade() -> None:
    op.drop_index("ix_notification_events_processed_on", table_name="notification_events")
    op.drop_column("notification_events", "processed_on")
