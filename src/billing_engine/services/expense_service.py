"""Project expenses."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.errors import InvalidStateError, NotFoundError, ValidationError
from billing_engine.models import Expense, utcnow
from billing_engine.models.base import ensure_utc
from billing_engine.services.base import (
    Actor,
    Clock,
    get_project_in_org,
    mark_financials_stale,
    normalize_currency,
    parse_positive_amount,
)

logger = logging.getLogger(__name__)

EXPENSE_FIELDS = {
    "amount",
    "currency",
    "category",
    "description",
    "receipt_url",
    "incurred_at",
    "billable",
}


def _require_text(value: Any, field_name: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{field_name} is required", field=field_name)
    return text


class ExpenseService:
    """Create, update and delete project expenses.

    Expenses on a non-cancelled invoice are frozen. Every change marks the
    project's financial snapshot stale.
    """

    def __init__(self, session: AsyncSession, clock: Clock = utcnow):
        self.session = session
        self.clock = clock

    async def get_expense(self, actor: Actor, project_id: UUID, expense_id: UUID) -> Expense:
        expense = await self.session.get(Expense, expense_id)
        if (
            expense is None
            or expense.organization_id != actor.organization_id
            or expense.project_id != project_id
        ):
            raise NotFoundError(f"Expense {expense_id} not found", expense_id=expense_id)
        return expense

    async def list_expenses(self, actor: Actor, project_id: UUID) -> list[Expense]:
        await get_project_in_org(self.session, actor.organization_id, project_id)
        result = await self.session.execute(
            select(Expense)
            .where(Expense.project_id == project_id)
            .order_by(Expense.created_at.desc(), Expense.id)
        )
        return list(result.scalars().all())

    async def create_expense(
        self,
        actor: Actor,
        project_id: UUID,
        amount: Decimal | float | str,
        currency: str,
        category: str,
        description: str,
        receipt_url: str | None = None,
        incurred_at: datetime | None = None,
        billable: bool = True,
    ) -> Expense:
        await get_project_in_org(self.session, actor.organization_id, project_id)
        now = self.clock()
        expense = Expense(
            organization_id=actor.organization_id,
            project_id=project_id,
            amount=parse_positive_amount(amount),
            currency=normalize_currency(currency),
            category=_require_text(category, "category"),
            description=_require_text(description, "description"),
            receipt_url=receipt_url,
            incurred_at=ensure_utc(incurred_at) if incurred_at else None,
            billable=billable,
            created_by=actor.user_id,
            created_at=now,
            updated_at=now,
        )
        self.session.add(expense)
        await self.session.flush()
        await mark_financials_stale(self.session, project_id)
        logger.info(
            "Expense %s of %s %s added to project %s",
            expense.id,
            expense.amount,
            expense.currency,
            project_id,
        )
        return expense

    async def update_expense(
        self, actor: Actor, project_id: UUID, expense_id: UUID, changes: dict[str, Any]
    ) -> Expense:
        expense = await self.get_expense(actor, project_id, expense_id)
        self._ensure_editable(expense)
        unknown = set(changes) - EXPENSE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")

        if changes.get("amount") is not None:
            expense.amount = parse_positive_amount(changes["amount"])
        if changes.get("currency") is not None:
            expense.currency = normalize_currency(changes["currency"])
        if changes.get("category") is not None:
            expense.category = _require_text(changes["category"], "category")
        if changes.get("description") is not None:
            expense.description = _require_text(changes["description"], "description")
        if "receipt_url" in changes:
            expense.receipt_url = changes["receipt_url"]
        if "incurred_at" in changes:
            incurred_at = changes["incurred_at"]
            expense.incurred_at = ensure_utc(incurred_at) if incurred_at else None
        if changes.get("billable") is not None:
            expense.billable = changes["billable"]

        await self.session.flush()
        await mark_financials_stale(self.session, project_id)
        return expense

    async def delete_expense(self, actor: Actor, project_id: UUID, expense_id: UUID) -> None:
        expense = await self.get_expense(actor, project_id, expense_id)
        self._ensure_editable(expense)
        await self.session.delete(expense)
        await self.session.flush()
        await mark_financials_stale(self.session, project_id)
        logger.info("Expense %s deleted from project %s", expense_id, project_id)

    @staticmethod
    def _ensure_editable(expense: Expense) -> None:
        if expense.invoice_id is not None:
            raise InvalidStateError(
                "Expense is on an invoice and can no longer be changed",
                current_state="invoiced",
                expense_id=expense.id,
            )
