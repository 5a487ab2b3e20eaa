"""Freelancer payout ledger and reconciliation against tracked cost."""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.calculators.line_builder import InvoiceLineBuilder
from billing_engine.calculators.rate_resolver import RateCache, RateResolver
from billing_engine.calculators.types import RateType
from billing_engine.config import Settings, get_settings
from billing_engine.errors import CurrencyMismatchError, NotFoundError, ValidationError
from billing_engine.events import (
    EventEmitter,
    EventMetadata,
    PayoutCompleted,
    PayoutCreated,
    PayoutFailed,
    default_emitter,
)
from billing_engine.models import Member, Payout, TimeEntry, utcnow
from billing_engine.models.base import ensure_utc
from billing_engine.services.alert_service import AlertService, AlertSeverity, AlertType
from billing_engine.services.base import (
    Actor,
    Clock,
    get_project_in_org,
    normalize_currency,
    parse_positive_amount,
)
from billing_engine.services.financials_service import price_entries
from billing_engine.services.state_machine import PayoutStateMachine, PayoutStatus

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

EXPORT_COLUMNS = [
    "id",
    "freelancer_user_id",
    "freelancer_email",
    "project_id",
    "amount",
    "currency",
    "payout_method",
    "status",
    "payout_reference",
    "scheduled_for",
    "paid_at",
    "created_at",
]


@dataclass(frozen=True)
class FreelancerSummary:
    freelancer_user_id: UUID
    currency: str
    total_hours: Decimal
    total_cost: Decimal
    paid_total: Decimal
    pending_payout_total: Decimal
    due_total: Decimal
    over_paid: bool
    from_ts: datetime | None
    to_ts: datetime | None


class PayoutService:
    """Service for the payout ledger.

    Payouts are created pending and end completed or failed; both outcomes
    are terminal, so a completed payout keeps its original reference.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        clock: Clock = utcnow,
        emitter: EventEmitter | None = None,
        rate_cache: RateCache | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.clock = clock
        self.emitter = emitter or default_emitter
        self.rate_cache = rate_cache
        self.alerts = AlertService(session, clock=clock, emitter=self.emitter)

    def _now(self) -> datetime:
        return ensure_utc(self.clock())

    def _metadata(self, actor: Actor) -> EventMetadata:
        return EventMetadata.create(actor.organization_id, actor.user_id, timestamp=self._now())

    async def get_payout(self, organization_id: UUID, payout_id: UUID) -> Payout:
        payout = await self.session.get(Payout, payout_id)
        if payout is None or payout.organization_id != organization_id:
            raise NotFoundError(f"Payout {payout_id} not found", payout_id=payout_id)
        return payout

    async def create_payout(
        self,
        actor: Actor,
        freelancer_user_id: UUID,
        amount: Decimal | float | str,
        currency: str,
        payout_method: str,
        project_id: UUID | None = None,
        scheduled_for: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Payout:
        """Record a pending payout to a freelancer."""
        if not (payout_method or "").strip():
            raise ValidationError("payout_method is required", field="payout_method")
        if project_id is not None:
            await get_project_in_org(self.session, actor.organization_id, project_id)

        payout = Payout(
            organization_id=actor.organization_id,
            freelancer_user_id=freelancer_user_id,
            project_id=project_id,
            amount=parse_positive_amount(amount),
            currency=normalize_currency(currency),
            payout_method=payout_method.strip(),
            status=PayoutStatus.PENDING.value,
            scheduled_for=ensure_utc(scheduled_for) if scheduled_for else None,
            payout_metadata=dict(metadata or {}),
            created_by=actor.user_id,
            created_at=self._now(),
        )
        self.session.add(payout)
        await self.session.flush()

        logger.info(
            "Payout %s of %s %s created for freelancer %s",
            payout.id,
            payout.amount,
            payout.currency,
            freelancer_user_id,
        )
        self.emitter.emit(
            PayoutCreated(
                metadata=self._metadata(actor),
                payout_id=payout.id,
                freelancer_user_id=freelancer_user_id,
                amount=payout.amount,
                currency=payout.currency,
            )
        )
        return payout

    async def mark_completed(
        self,
        actor: Actor,
        payout_id: UUID,
        payout_reference: str,
        paid_at: datetime | None = None,
    ) -> Payout:
        """pending → completed.

        Raises:
            InvalidStateError: the payout is already completed or failed
        """
        payout = await self.get_payout(actor.organization_id, payout_id)
        PayoutStateMachine.validate_transition(payout.status, PayoutStatus.COMPLETED)
        reference = (payout_reference or "").strip()
        if not reference:
            raise ValidationError("payout_reference is required", field="payout_reference")

        payout.status = PayoutStatus.COMPLETED.value
        payout.payout_reference = reference
        payout.paid_at = ensure_utc(paid_at) if paid_at else self._now()
        await self.session.flush()

        logger.info("Payout %s completed with reference %s", payout.id, reference)
        self.emitter.emit(
            PayoutCompleted(
                metadata=self._metadata(actor),
                payout_id=payout.id,
                freelancer_user_id=payout.freelancer_user_id,
                payout_reference=reference,
                paid_at=payout.paid_at,
            )
        )
        return payout

    async def mark_failed(self, actor: Actor, payout_id: UUID, reason: str) -> Payout:
        """pending → failed."""
        payout = await self.get_payout(actor.organization_id, payout_id)
        PayoutStateMachine.validate_transition(payout.status, PayoutStatus.FAILED)
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A failure reason is required", field="reason")

        payout.status = PayoutStatus.FAILED.value
        payout.failure_reason = reason
        await self.session.flush()

        logger.warning("Payout %s failed: %s", payout.id, reason)
        self.emitter.emit(
            PayoutFailed(
                metadata=self._metadata(actor),
                payout_id=payout.id,
                freelancer_user_id=payout.freelancer_user_id,
                failure_reason=reason,
            )
        )
        return payout

    async def _user_id_for_email(self, organization_id: UUID, email: str) -> UUID | None:
        return await self.session.scalar(
            select(Member.user_id).where(
                Member.organization_id == organization_id,
                func.lower(Member.email) == email.strip().lower(),
            )
        )

    async def list_payouts(
        self,
        organization_id: UUID,
        freelancer_id: UUID | None = None,
        freelancer_email: str | None = None,
        created_from: datetime | None = None,
    ) -> list[Payout]:
        """Payouts of the organization, newest first.

        An e-mail that matches no member yields an empty list.
        """
        query = select(Payout).where(Payout.organization_id == organization_id)
        if freelancer_email:
            user_id = await self._user_id_for_email(organization_id, freelancer_email)
            if user_id is None:
                return []
            query = query.where(Payout.freelancer_user_id == user_id)
        elif freelancer_id is not None:
            query = query.where(Payout.freelancer_user_id == freelancer_id)
        if created_from is not None:
            query = query.where(Payout.created_at >= ensure_utc(created_from))
        result = await self.session.execute(query.order_by(Payout.created_at.desc(), Payout.id))
        return list(result.scalars().all())

    async def export_payouts_csv(
        self, organization_id: UUID, created_from: datetime | None = None
    ) -> str:
        """CSV of the organization's payouts, oldest first."""
        payouts = await self.list_payouts(organization_id, created_from=created_from)
        payouts.reverse()

        emails: dict[UUID, str] = {}
        if payouts:
            members = await self.session.execute(
                select(Member).where(
                    Member.organization_id == organization_id,
                    Member.user_id.in_({p.freelancer_user_id for p in payouts}),
                )
            )
            emails = {m.user_id: m.email for m in members.scalars()}

        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS, lineterminator="\n")
        writer.writeheader()
        for p in payouts:
            writer.writerow(
                {
                    "id": p.id,
                    "freelancer_user_id": p.freelancer_user_id,
                    "freelancer_email": emails.get(p.freelancer_user_id, ""),
                    "project_id": p.project_id or "",
                    "amount": f"{p.amount:.2f}",
                    "currency": p.currency,
                    "payout_method": p.payout_method,
                    "status": p.status,
                    "payout_reference": p.payout_reference or "",
                    "scheduled_for": p.scheduled_for.isoformat() if p.scheduled_for else "",
                    "paid_at": p.paid_at.isoformat() if p.paid_at else "",
                    "created_at": p.created_at.isoformat(),
                }
            )
        return buffer.getvalue()

    async def freelancer_finance_summary(
        self,
        organization_id: UUID,
        user_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> FreelancerSummary:
        """Reconcile a freelancer's tracked cost against payouts.

        Cost covers every finalized entry of the user in the organization,
        across projects. ``due_total`` never goes below zero; an overpayment
        sets ``over_paid`` and raises a negative_due alert.
        """
        start = ensure_utc(start) if start else None
        end = ensure_utc(end) if end else None

        entry_query = select(TimeEntry).where(
            TimeEntry.organization_id == organization_id,
            TimeEntry.user_id == user_id,
            TimeEntry.end_ts.is_not(None),
        )
        if start is not None:
            entry_query = entry_query.where(TimeEntry.start_ts >= start)
        if end is not None:
            entry_query = entry_query.where(TimeEntry.start_ts < end)
        entries = (await self.session.execute(entry_query.order_by(TimeEntry.start_ts))).scalars().all()

        resolver = RateResolver(self.session, cache=self.rate_cache)
        cost = await price_entries(resolver, entries, RateType.COST, missing_ok=True)
        if cost.missing_rate_users:
            logger.warning("No cost rate for freelancer %s on some entries; counted as zero", user_id)

        payouts = await self.list_payouts(organization_id, freelancer_id=user_id)
        paid = ZERO
        pending = ZERO
        currencies = set(cost.currencies)
        for payout in payouts:
            if payout.status == PayoutStatus.COMPLETED:
                when = payout.paid_at
                bucket = "paid"
            elif payout.status == PayoutStatus.PENDING:
                when = payout.scheduled_for or payout.created_at
                bucket = "pending"
            else:
                continue
            if start is not None and (when is None or when < start):
                continue
            if end is not None and (when is None or when >= end):
                continue
            currencies.add(payout.currency)
            if bucket == "paid":
                paid += Decimal(payout.amount)
            else:
                pending += Decimal(payout.amount)

        if len(currencies) > 1:
            raise CurrencyMismatchError(currencies)
        currency = next(iter(currencies), None) or self.settings.default_currency

        total_cost = cost.rounded
        paid = InvoiceLineBuilder.round_to_cents(paid)
        pending = InvoiceLineBuilder.round_to_cents(pending)
        raw_due = total_cost - paid - pending
        over_paid = raw_due < 0
        if over_paid:
            await self.alerts.raise_alert(
                organization_id,
                AlertType.NEGATIVE_DUE,
                AlertSeverity.HIGH,
                subject_user_id=user_id,
                threshold=ZERO,
                current_value=raw_due,
                currency=currency,
                notes=f"Payouts exceed tracked cost by {-raw_due} {currency}",
            )

        return FreelancerSummary(
            freelancer_user_id=user_id,
            currency=currency,
            total_hours=cost.hours,
            total_cost=total_cost,
            paid_total=paid,
            pending_payout_total=pending,
            due_total=max(raw_due, ZERO),
            over_paid=over_paid,
            from_ts=start,
            to_ts=end,
        )
