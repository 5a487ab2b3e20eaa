"""Helpers shared by the services: the acting principal and common lookups."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.errors import ForbiddenError, NotFoundError, ValidationError
from billing_engine.models import Project, ProjectFinancials

Clock = Callable[[], datetime]

FINANCE_READ = "finance:read"
FINANCE_WRITE = "finance:write"


@dataclass(frozen=True)
class Actor:
    """Authenticated caller as provided by the identity collaborator."""

    organization_id: UUID
    user_id: UUID
    permissions: frozenset[str] = field(default_factory=frozenset)

    def can(self, permission: str) -> bool:
        if permission in self.permissions:
            return True
        # write implies read
        return permission == FINANCE_READ and FINANCE_WRITE in self.permissions

    def require(self, permission: str) -> None:
        """Raise ForbiddenError unless the actor holds ``permission``."""
        if not self.can(permission):
            raise ForbiddenError(f"Missing permission '{permission}'", permission=permission)


async def get_project_in_org(
    session: AsyncSession, organization_id: UUID, project_id: UUID
) -> Project:
    """Load a project; projects of other organizations are reported as missing."""
    project = await session.get(Project, project_id)
    if project is None or project.organization_id != organization_id:
        raise NotFoundError(f"Project {project_id} not found", project_id=project_id)
    return project


async def mark_financials_stale(session: AsyncSession, *project_ids: UUID) -> None:
    """Flag the projects' financial snapshots for recompute on next read."""
    ids = {pid for pid in project_ids if pid is not None}
    if not ids:
        return
    await session.execute(
        update(ProjectFinancials)
        .where(ProjectFinancials.project_id.in_(ids))
        .values(is_stale=True)
        .execution_options(synchronize_session=False)
    )


async def mark_organization_stale(session: AsyncSession, organization_id: UUID) -> None:
    """Flag every snapshot of an organization (rate changes can affect all of them)."""
    await session.execute(
        update(ProjectFinancials)
        .where(ProjectFinancials.organization_id == organization_id)
        .values(is_stale=True)
        .execution_options(synchronize_session=False)
    )


CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


def normalize_currency(currency: str) -> str:
    """Upper-case an ISO-4217 code, raising ValidationError if malformed."""
    code = (currency or "").strip().upper()
    if not CURRENCY_RE.match(code):
        raise ValidationError(f"Invalid currency code '{currency}'", field="currency")
    return code


def parse_positive_amount(value: Any, field_name: str = "amount") -> Decimal:
    """Parse a money/rate value that must be strictly positive."""
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"{field_name} must be a number", field=field_name) from None
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{field_name} must be greater than zero", field=field_name)
    return amount
