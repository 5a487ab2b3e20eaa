"""Rates, expenses, financial snapshots and finance alerts."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from billing_engine.models.base import Base, IdMixin, TimestampMixin, UpdatedAtMixin


class Rate(Base, IdMixin, UpdatedAtMixin):
    """Scoped hourly price with a half-open effective window.

    Windows for the same (organization, scope, scope_id, rate_type, currency)
    never overlap. Rows are not edited in place: a successor closes the
    predecessor's ``effective_to``.
    """

    __tablename__ = "rate"

    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    scope: Mapped[str] = mapped_column(String(16), nullable=False)
    scope_id: Mapped[UUID | None] = mapped_column(nullable=True)
    rate_type: Mapped[str] = mapped_column(String(16), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    hourly_rate: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    effective_from: Mapped[datetime | None] = mapped_column(nullable=True)
    effective_to: Mapped[datetime | None] = mapped_column(nullable=True)
    created_by: Mapped[UUID] = mapped_column(nullable=False)

    __table_args__ = (
        Index("rate_scope_lookup_idx", "organization_id", "scope", "scope_id", "rate_type"),
        CheckConstraint(
            "scope IN ('user', 'project', 'client', 'default')", name="rate_scope_check"
        ),
        CheckConstraint("rate_type IN ('billable', 'cost')", name="rate_type_check"),
        CheckConstraint("hourly_rate > 0", name="rate_hourly_positive"),
        CheckConstraint(
            "(scope = 'default' AND scope_id IS NULL) OR (scope <> 'default' AND scope_id IS NOT NULL)",
            name="rate_scope_id_check",
        ),
        CheckConstraint(
            "effective_from IS NULL OR effective_to IS NULL OR effective_to > effective_from",
            name="rate_window_check",
        ),
    )


class Expense(Base, IdMixin, UpdatedAtMixin):
    """Project expense; billable expenses are carried onto invoices."""

    __tablename__ = "expense"

    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    project_id: Mapped[UUID] = mapped_column(
        ForeignKey("project.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    category: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    receipt_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    billable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    incurred_at: Mapped[datetime | None] = mapped_column(nullable=True)
    invoice_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("invoice.id", ondelete="SET NULL"), nullable=True
    )
    created_by: Mapped[UUID] = mapped_column(nullable=False)

    __table_args__ = (CheckConstraint("amount > 0", name="expense_amount_positive"),)


class ProjectFinancials(Base, UpdatedAtMixin):
    """Materialized financial rollup for a project.

    Single row per project, overwritten by every recompute. ``version`` grows
    monotonically and guards against lost updates; ``is_stale`` is raised by
    any change to the snapshot's sources.
    """

    __tablename__ = "project_financials"

    project_id: Mapped[UUID] = mapped_column(
        ForeignKey("project.id", ondelete="CASCADE"), primary_key=True
    )
    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    revenue: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    freelancer_cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    expenses: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    profit: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    margin_percent: Mapped[Decimal | None] = mapped_column(Numeric(9, 2), nullable=True)
    billable_hours: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    budget_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    projected_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    notes: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    last_updated: Mapped[datetime] = mapped_column(nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_stale: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __mapper_args__ = {"version_id_col": version}


class FinanceAlert(Base, IdMixin, TimestampMixin):
    """Threshold breach surfaced to finance operators."""

    __tablename__ = "finance_alert"

    organization_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    project_id: Mapped[UUID | None] = mapped_column(nullable=True)
    subject_user_id: Mapped[UUID | None] = mapped_column(nullable=True)
    alert_type: Mapped[str] = mapped_column(String(32), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    threshold: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    current_value: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    acknowledged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    acknowledged_at: Mapped[datetime | None] = mapped_column(nullable=True)
    acknowledged_by: Mapped[UUID | None] = mapped_column(nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "severity IN ('low', 'medium', 'high', 'critical')",
            name="finance_alert_severity_check",
        ),
    )
