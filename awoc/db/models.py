"""
AWOC — SQLAlchemy Models
==========================
Tables backing the task, event and receipt store.

Entities: TaskRow, EventRow, EventReceiptRow.

Design decisions:
- JSON columns use JSONB on PostgreSQL and generic JSON elsewhere.
- All timestamps are UTC with timezone.
- Events are immutable; receipts are only ever updated to set
  ``started_at`` (the claim).
- Terminal task columns (``completed_at`` / ``errored_at``) are written
  through conditional updates only.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Shared declarative base for all AWOC models."""
    pass


# ── Task ────────────────────────────────────────────────────────────────

class TaskRow(Base):
    """Unit of work.  Lifecycle derived from the timestamp columns."""

    __tablename__ = "tasks"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    owner_identifier: Mapped[str] = mapped_column(String(128), nullable=False)
    task_identifier: Mapped[str] = mapped_column(String(128), nullable=False)
    task_description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    handler_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    handler_identifier: Mapped[str | None] = mapped_column(String(256))
    trigger: Mapped[dict] = mapped_column(JSONType, nullable=False)
    input_data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    target_location: Mapped[dict | None] = mapped_column(JSONType)
    target_user_id: Mapped[str | None] = mapped_column(String(128))
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    dont_start_before: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    errored_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    success: Mapped[bool | None] = mapped_column(Boolean)
    output: Mapped[dict | None] = mapped_column(JSONType)
    error_code: Mapped[str | None] = mapped_column(String(128))
    error_message: Mapped[str | None] = mapped_column(Text)
    error: Mapped[dict | None] = mapped_column(JSONType)
    start_context: Mapped[dict | None] = mapped_column(JSONType)
    system_log: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    # bumped by every system_log write; guards the read-modify-write
    log_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_tasks_owner", "owner_identifier"),
        Index("ix_tasks_open", "completed_at", "errored_at"),
        Index("ix_tasks_created", "created_at"),
    )


# ── Event ───────────────────────────────────────────────────────────────

class EventRow(Base):
    """Immutable published event."""

    __tablename__ = "events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    event_key: Mapped[str] = mapped_column(String(256), nullable=False)
    emitter_identifier: Mapped[str] = mapped_column(String(128), nullable=False)
    target_user_id: Mapped[str | None] = mapped_column(String(128))
    target_location: Mapped[dict | None] = mapped_column(JSONType)
    data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("ix_events_key", "event_key"),
        Index("ix_events_created", "created_at"),
    )


# ── Event Receipt ───────────────────────────────────────────────────────

class EventReceiptRow(Base):
    """One delivery of an event to one subscriber.  Claimed at most once."""

    __tablename__ = "event_receipts"

    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("events.id", ondelete="CASCADE"), primary_key=True
    )
    subscriber_identifier: Mapped[str] = mapped_column(
        String(128), primary_key=True
    )
    event_key: Mapped[str] = mapped_column(String(256), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_receipts_pending", "started_at", "subscriber_identifier", "event_key"),
        Index("ix_receipts_created", "created_at"),
    )
