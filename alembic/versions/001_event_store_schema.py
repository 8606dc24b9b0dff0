"""Event store schema: domain_events, notification_events, snapshots.

Revision ID: 001_event_store_schema
Revises: None
Create Date: 2024-01-01 00:00:00.000000
"""
from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001_event_store_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _envelope_columns() -> list[sa.Column]:
    return [
        sa.Column("position", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("envelope_id", sa.String(36), nullable=False, unique=True),
        sa.Column("aggregate_id", sa.String(64), nullable=False),
        sa.Column("aggregate_type", sa.String(128), nullable=False),
        sa.Column("aggregate_version", sa.Integer, nullable=False),
        sa.Column("event_type_name", sa.String(256), nullable=False),
        sa.Column("payload", sa.LargeBinary, nullable=False),
        sa.Column("created_on", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    # Domain event log
    op.create_table(
        "domain_events",
        *_envelope_columns(),
        sa.UniqueConstraint(
            "aggregate_id", "aggregate_version",
            name="uq_domain_events_stream_version",
        ),
    )
    op.create_index("ix_domain_events_event_type_name", "domain_events", ["event_type_name"])
    op.create_index("ix_domain_events_created_on", "domain_events", ["created_on"])

    # Notification outbox
    op.create_table("notification_events", *_envelope_columns())
    op.create_index(
        "ix_notification_events_stream",
        "notification_events",
        ["aggregate_id", "aggregate_version"],
    )
    op.create_index(
        "ix_notification_events_event_type_name",
        "notification_events",
        ["event_type_name"],
    )
    op.create_index("ix_notification_events_created_on", "notification_events", ["created_on"])

    # Snapshots: one row per aggregate
    op.create_table(
        "snapshots",
        sa.Column("aggregate_id", sa.String(64), primary_key=True),
        sa.Column("aggregate_type", sa.String(128), nullable=False),
        sa.Column("version", sa.Integer, nullable=False),
        sa.Column("memento_type_name", sa.String(256), nullable=False),
        sa.Column("payload", sa.LargeBinary, nullable=False),
        sa.Column("created_on", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("snapshots")
    op.drop_table("notification_events")
    op.drop_table("domain_events")
