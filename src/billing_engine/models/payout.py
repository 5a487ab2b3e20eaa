"""Freelancer payout model."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, CheckConstraint, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from billing_engine.models.base import Base, IdMixin, TimestampMixin


class Payout(Base, IdMixin, TimestampMixin):
    """Amount scheduled or paid to a freelancer.

    pending -> completed | failed; both outcomes are terminal.
    """

    __tablename__ = "payout"

    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    freelancer_user_id: Mapped[UUID] = mapped_column(nullable=False)
    project_id: Mapped[UUID | None] = mapped_column(nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    payout_method: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    payout_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    scheduled_for: Mapped[datetime | None] = mapped_column(nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    payout_metadata: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_by: Mapped[UUID] = mapped_column(nullable=False)

    __table_args__ = (
        Index("payout_org_freelancer_idx", "organization_id", "freelancer_user_id"),
        CheckConstraint("amount > 0", name="payout_amount_positive"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed')", name="payout_status_check"
        ),
    )
