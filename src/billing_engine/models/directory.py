"""Organization directory references: clients, projects and members.

These rows mirror the external organization/membership service. The engine
only reads them (rate scoping, budgets, e-mail lookups).
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Date, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from billing_engine.models.base import Base, IdMixin, TimestampMixin


class Client(Base, IdMixin, TimestampMixin):
    """Client of an organization (the party invoices are addressed to)."""

    __tablename__ = "client"

    organization_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)


class Project(Base, IdMixin, TimestampMixin):
    """Project owning time entries, expenses and invoices."""

    __tablename__ = "project"

    organization_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    client_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("client.id", ondelete="SET NULL"), nullable=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    budget_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    projected_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)


class Member(Base, TimestampMixin):
    """Organization membership of a user."""

    __tablename__ = "member"

    user_id: Mapped[UUID] = mapped_column(primary_key=True)
    organization_id: Mapped[UUID] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(200), nullable=True)

    __table_args__ = (Index("member_org_email_idx", "organization_id", "email"),)
