"""SQLAlchemy ORM models for the event store database.

Three tables, each keyed by ``aggregate_id``:

    domain_events        append-only, UNIQUE(aggregate_id, aggregate_version)
    notification_events  outbox, same envelope shape plus a processed_on mark
    snapshots            one live row per aggregate (aggregate_id is the PK)

``position`` is a global autoincrement sequence per envelope table.  Payloads
are opaque bytes; timestamps are stored with their UTC offset where the
dialect supports it.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    DateTime,
    Index,
    Integer,
    LargeBinary,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements an INTEGER PRIMARY KEY.
_PositionType = BigInteger().with_variant(Integer, "sqlite")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""

    pass


class _EnvelopeColumns:
    """Columns shared by both envelope logs."""

    position: Mapped[int] = mapped_column(
        _PositionType, primary_key=True, autoincrement=True,
    )
    envelope_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    aggregate_id: Mapped[str] = mapped_column(String(64), nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(128), nullable=False)
    aggregate_version: Mapped[int] = mapped_column(Integer, nullable=False)
    event_type_name: Mapped[str] = mapped_column(String(256), nullable=False)
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    created_on: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
    )


# ---------------------------------------------------------------------------
# DomainEventRecord
# ---------------------------------------------------------------------------

class DomainEventRecord(_EnvelopeColumns, Base):
    """One immutable domain event envelope."""

    __tablename__ = "domain_events"

    __table_args__ = (
        UniqueConstraint(
            "aggregate_id", "aggregate_version",
            name="uq_domain_events_stream_version",
        ),
        Index("ix_domain_events_event_type_name", "event_type_name"),
        Index("ix_domain_events_created_on", "created_on"),
    )

    def __repr__(self) -> str:
        return (
            f"<DomainEventRecord(aggregate_id={self.aggregate_id!r}, "
            f"version={self.aggregate_version}, type={self.event_type_name!r})>"
        )


# ---------------------------------------------------------------------------
# NotificationEventRecord
# ---------------------------------------------------------------------------

class NotificationEventRecord(_EnvelopeColumns, Base):
    """Outbox entry for external subscribers."""

    __tablename__ = "notification_events"

    # NULL until the relay has published the row.
    processed_on: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    __table_args__ = (
        Index(
            "ix_notification_events_stream",
            "aggregate_id", "aggregate_version",
        ),
        Index("ix_notification_events_event_type_name", "event_type_name"),
        Index("ix_notification_events_created_on", "created_on"),
        Index("ix_notification_events_processed_on", "processed_on"),
    )

    def __repr__(self) -> str:
        return (
            f"<NotificationEventRecord(aggregate_id={self.aggregate_id!r}, "
            f"type={self.event_type_name!r})>"
        )


# ---------------------------------------------------------------------------
# SnapshotRecord
# ---------------------------------------------------------------------------

class SnapshotRecord(Base):
    """Current memento of one aggregate.  Replaced in place, never duplicated."""

    __tablename__ = "snapshots"

    aggregate_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    aggregate_type: Mapped[str] = mapped_column(String(128), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    memento_type_name: Mapped[str] = mapped_column(String(256), nullable=False)
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    created_on: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
    )

    def __repr__(self) -> str:
        return (
            f"<SnapshotRecord(aggregate_id={self.aggregate_id!r}, "
            f"version={self.version})>"
        )

