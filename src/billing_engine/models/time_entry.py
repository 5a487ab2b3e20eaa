"""Time entry and activity heartbeat models."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from billing_engine.models.base import Base, IdMixin, TimestampMixin, UpdatedAtMixin


class TimeEntry(Base, IdMixin, UpdatedAtMixin):
    """One continuous (possibly paused) span of tracked work.

    ``duration_seconds`` is derived: wall span minus paused intervals minus the
    committed idle trim. It stays NULL while the entry is open.
    """

    __tablename__ = "time_entry"

    organization_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    user_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    project_id: Mapped[UUID] = mapped_column(
        ForeignKey("project.id", ondelete="CASCADE"), nullable=False, index=True
    )
    task_id: Mapped[UUID | None] = mapped_column(nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    start_ts: Mapped[datetime] = mapped_column(nullable=False)
    end_ts: Mapped[datetime | None] = mapped_column(nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    billable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="timer")

    # [{"start": iso, "end": iso | None}, ...], chronological, at most one open
    paused_intervals: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )
    # {"idle_seconds", "idle_percent", "suggested_trim_seconds"}; advisory only
    idle_suggestion: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    idle_trim_applied_seconds: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )

    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Billing lock: set while the entry is on a non-cancelled invoice
    invoice_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("invoice.id", ondelete="SET NULL"), nullable=True, index=True
    )
    locked_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        Index(
            "time_entry_one_open_per_user",
            "user_id",
            unique=True,
            sqlite_where=text("end_ts IS NULL"),
            postgresql_where=text("end_ts IS NULL"),
        ),
        Index("time_entry_user_idempotency_idx", "user_id", "idempotency_key"),
        CheckConstraint(
            "source IN ('timer', 'manual', 'calendar', 'import')",
            name="time_entry_source_check",
        ),
        CheckConstraint(
            "end_ts IS NULL OR end_ts >= start_ts", name="time_entry_bounds_check"
        ),
        CheckConstraint(
            "duration_seconds IS NULL OR duration_seconds >= 0",
            name="time_entry_duration_nonnegative",
        ),
        CheckConstraint(
            "idle_trim_applied_seconds >= 0", name="time_entry_trim_nonnegative"
        ),
    )

    @property
    def is_open(self) -> bool:
        return self.end_ts is None

    @property
    def is_paused(self) -> bool:
        return self.is_open and any(
            interval.get("end") is None for interval in self.paused_intervals or []
        )

    @property
    def is_billed(self) -> bool:
        return self.invoice_id is not None

    @property
    def state(self) -> str:
        """Timer state: running, paused or stopped."""
        if not self.is_open:
            return "stopped"
        return "paused" if self.is_paused else "running"


class ActivityHeartbeat(Base, IdMixin, TimestampMixin):
    """Client activity ping recorded while a timer runs."""

    __tablename__ = "activity_heartbeat"

    user_id: Mapped[UUID] = mapped_column(nullable=False)
    time_entry_id: Mapped[UUID] = mapped_column(
        ForeignKey("time_entry.id", ondelete="CASCADE"), nullable=False
    )
    ts: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (Index("activity_heartbeat_entry_ts_idx", "time_entry_id", "ts"),)
