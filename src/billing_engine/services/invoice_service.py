"""Invoice drafting, delivery and lifecycle."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.calculators.line_builder import (
    BillableExpense,
    BillableTime,
    InvoiceLineBuilder,
)
from billing_engine.calculators.rate_resolver import RateCache, RateResolver
from billing_engine.calculators.types import RateType
from billing_engine.config import Settings, get_settings
from billing_engine.errors import (
    ConflictError,
    DeliveryError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from billing_engine.events import (
    EventEmitter,
    EventMetadata,
    InvoiceCancelled,
    InvoiceDrafted,
    InvoiceSent,
    default_emitter,
)
from billing_engine.models import Client, Expense, Invoice, InvoiceLine, TimeEntry, utcnow
from billing_engine.models.base import ensure_utc
from billing_engine.providers import (
    InvoiceDeliveryProvider,
    InvoiceDocument,
    InvoiceDocumentLine,
    InvoiceRenderer,
    LoggingDeliveryProvider,
    PlainTextInvoiceRenderer,
    RenderedDocument,
)
from billing_engine.services.base import Actor, Clock, get_project_in_org, mark_financials_stale
from billing_engine.services.state_machine import InvoiceStateMachine, InvoiceStatus

logger = logging.getLogger(__name__)


def format_invoice_number(year: int, sequence: int) -> str:
    return f"INV-{year}-{sequence:05d}"


@dataclass
class DraftOutcome:
    """A persisted draft and, when sending was requested, how delivery went."""

    invoice: Invoice
    delivery_error: str | None = None


class InvoiceService:
    """Service for the invoice lifecycle.

    Drafting takes a window of unbilled, finalized, billable time entries and
    billable expenses and locks them to the invoice; cancelling releases them.
    An entry can therefore be on at most one non-cancelled invoice.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        clock: Clock = utcnow,
        emitter: EventEmitter | None = None,
        delivery: InvoiceDeliveryProvider | None = None,
        renderer: InvoiceRenderer | None = None,
        rate_cache: RateCache | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.clock = clock
        self.emitter = emitter or default_emitter
        self.delivery = delivery or LoggingDeliveryProvider()
        self.renderer = renderer or PlainTextInvoiceRenderer()
        self.rate_cache = rate_cache

    def _now(self) -> datetime:
        return ensure_utc(self.clock())

    def _metadata(self, actor: Actor) -> EventMetadata:
        return EventMetadata.create(actor.organization_id, actor.user_id, timestamp=self._now())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_invoice(self, organization_id: UUID, invoice_id: UUID) -> Invoice:
        invoice = await self.session.get(Invoice, invoice_id)
        if invoice is None or invoice.organization_id != organization_id:
            raise NotFoundError(f"Invoice {invoice_id} not found", invoice_id=invoice_id)
        return invoice

    async def list_invoices(
        self,
        organization_id: UUID,
        project_id: UUID | None = None,
        status: str | None = None,
    ) -> list[Invoice]:
        query = select(Invoice).where(Invoice.organization_id == organization_id)
        if project_id is not None:
            query = query.where(Invoice.project_id == project_id)
        if status is not None:
            try:
                query = query.where(Invoice.status == InvoiceStatus(status).value)
            except ValueError:
                raise ValidationError(f"Unknown invoice status '{status}'", field="status") from None
        result = await self.session.execute(
            query.order_by(Invoice.issue_date.desc(), Invoice.sequence.desc())
        )
        return list(result.scalars().all())

    async def _next_sequence(self, organization_id: UUID, issue_year: int) -> int:
        """Numbering restarts at 1 every calendar year."""
        current = await self.session.scalar(
            select(func.max(Invoice.sequence)).where(
                Invoice.organization_id == organization_id,
                Invoice.issue_year == issue_year,
            )
        )
        return int(current or 0) + 1

    # ------------------------------------------------------------------
    # Drafting
    # ------------------------------------------------------------------

    async def _unbilled_entries(
        self, project_id: UUID, start: datetime | None, end: datetime | None
    ) -> list[TimeEntry]:
        query = select(TimeEntry).where(
            TimeEntry.project_id == project_id,
            TimeEntry.end_ts.is_not(None),
            TimeEntry.billable.is_(True),
            TimeEntry.invoice_id.is_(None),
        )
        if start is not None:
            query = query.where(TimeEntry.start_ts >= start)
        if end is not None:
            query = query.where(TimeEntry.start_ts < end)
        result = await self.session.execute(
            query.order_by(TimeEntry.start_ts, TimeEntry.id).with_for_update()
        )
        return list(result.scalars().all())

    async def _unbilled_expenses(
        self, project_id: UUID, start: datetime | None, end: datetime | None
    ) -> list[Expense]:
        incurred = func.coalesce(Expense.incurred_at, Expense.created_at)
        query = select(Expense).where(
            Expense.project_id == project_id,
            Expense.billable.is_(True),
            Expense.invoice_id.is_(None),
        )
        if start is not None:
            query = query.where(incurred >= start)
        if end is not None:
            query = query.where(incurred < end)
        result = await self.session.execute(query.order_by(Expense.created_at).with_for_update())
        return list(result.scalars().all())

    async def draft_invoice(
        self,
        actor: Actor,
        project_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
        to_email: str | None = None,
        note: str | None = None,
        client_name: str | None = None,
        client_email: str | None = None,
        due_date: date | None = None,
        send_now: bool = False,
    ) -> DraftOutcome:
        """Draft an invoice from the project's unbilled work in [start, end).

        Raises:
            ValidationError: nothing billable in the window, or a bad window
            NotFoundError: unknown project or a missing billable rate
            CurrencyMismatchError: lines would mix currencies
        """
        project = await get_project_in_org(self.session, actor.organization_id, project_id)
        start = ensure_utc(start) if start else None
        end = ensure_utc(end) if end else None
        if start and end and end <= start:
            raise ValidationError("end must be after start", field="end")

        entries = await self._unbilled_entries(project_id, start, end)
        expenses = await self._unbilled_expenses(project_id, start, end)
        if not entries and not expenses:
            raise ValidationError("Nothing billable in the selected period")

        resolver = RateResolver(self.session, cache=self.rate_cache)
        time_items = []
        for entry in entries:
            rate = await resolver.resolve_for_project(
                project, RateType.BILLABLE, for_user_id=entry.user_id, at_ts=entry.end_ts
            )
            time_items.append(
                BillableTime(
                    entry_id=entry.id,
                    task_id=entry.task_id,
                    description=entry.description,
                    start_ts=entry.start_ts,
                    seconds=entry.duration_seconds or 0,
                    rate=rate,
                )
            )
        expense_items = [
            BillableExpense(
                expense_id=e.id,
                category=e.category,
                description=e.description,
                amount=Decimal(e.amount),
                currency=e.currency,
                incurred_at=e.incurred_at,
            )
            for e in expenses
        ]
        candidates, currency = InvoiceLineBuilder.build(time_items, expense_items)

        client = await self.session.get(Client, project.client_id) if project.client_id else None
        now = self._now()
        issue_date = now.date()
        sequence = await self._next_sequence(actor.organization_id, issue_date.year)
        subtotal = sum((c.amount for c in candidates), Decimal("0"))
        total_hours = sum((c.hours for c in candidates if c.kind == "time"), Decimal("0"))

        invoice = Invoice(
            organization_id=actor.organization_id,
            project=project,
            number=format_invoice_number(issue_date.year, sequence),
            issue_year=issue_date.year,
            sequence=sequence,
            status=InvoiceStatus.DRAFT.value,
            currency=currency or project.currency or self.settings.default_currency,
            issue_date=issue_date,
            due_date=due_date or issue_date + timedelta(days=self.settings.invoice_due_days),
            period_start=start or (min(e.start_ts for e in entries) if entries else None),
            period_end=end or (max(e.end_ts for e in entries) if entries else None),  # type: ignore[type-var]
            subtotal=subtotal,
            tax_total=Decimal("0"),
            total=subtotal,
            total_hours=total_hours,
            note=note,
            to_email=to_email,
            client_name=client_name or (client.name if client else None),
            client_email=client_email or (client.email if client else None),
            created_by=actor.user_id,
            created_at=now,
            updated_at=now,
            lines=[
                InvoiceLine(
                    position=position,
                    kind=c.kind,
                    description=c.description,
                    hours=c.hours,
                    rate=c.rate,
                    amount=c.amount,
                )
                for position, c in enumerate(candidates, start=1)
            ],
        )
        try:
            async with self.session.begin_nested():
                self.session.add(invoice)
                await self.session.flush()
        except IntegrityError:
            raise ConflictError(
                "Invoice number was taken by a concurrent draft; retry"
            ) from None

        await self._lock_sources(invoice, entries, expenses, now)

        logger.info(
            "Drafted invoice %s for project %s: %d entries, %d expenses, %s %s",
            invoice.number,
            project_id,
            len(entries),
            len(expenses),
            invoice.total,
            invoice.currency,
        )
        self.emitter.emit(
            InvoiceDrafted(
                metadata=self._metadata(actor),
                invoice_id=invoice.id,
                project_id=project_id,
                number=invoice.number,
                total=invoice.total,
                currency=invoice.currency,
                entry_count=len(entries),
            )
        )

        outcome = DraftOutcome(invoice=invoice)
        if send_now:
            try:
                await self.send_invoice(actor, invoice.id, to_email)
            except (DeliveryError, ValidationError) as e:
                logger.warning("Invoice %s kept as draft: %s", invoice.number, e.message)
                outcome.delivery_error = e.message
        return outcome

    async def _lock_sources(
        self,
        invoice: Invoice,
        entries: list[TimeEntry],
        expenses: list[Expense],
        now: datetime,
    ) -> None:
        if entries:
            result = await self.session.execute(
                update(TimeEntry)
                .where(
                    TimeEntry.id.in_([e.id for e in entries]),
                    TimeEntry.invoice_id.is_(None),
                )
                .values(invoice_id=invoice.id, locked_at=now)
            )
            if result.rowcount != len(entries):
                raise ConflictError("Some time entries were invoiced concurrently; retry")
        if expenses:
            result = await self.session.execute(
                update(Expense)
                .where(
                    Expense.id.in_([e.id for e in expenses]),
                    Expense.invoice_id.is_(None),
                )
                .values(invoice_id=invoice.id)
            )
            if result.rowcount != len(expenses):
                raise ConflictError("Some expenses were invoiced concurrently; retry")

    # ------------------------------------------------------------------
    # Delivery and rendering
    # ------------------------------------------------------------------

    @staticmethod
    def to_document(invoice: Invoice) -> InvoiceDocument:
        return InvoiceDocument(
            invoice_id=invoice.id,
            number=invoice.number,
            status=invoice.status,
            currency=invoice.currency,
            issue_date=invoice.issue_date,
            due_date=invoice.due_date,
            project_name=invoice.project_name,
            client_name=invoice.client_name,
            client_email=invoice.client_email,
            subtotal=invoice.subtotal,
            tax_total=invoice.tax_total,
            total=invoice.total,
            total_hours=invoice.total_hours,
            note=invoice.note,
            lines=tuple(
                InvoiceDocumentLine(
                    description=line.description,
                    hours=line.hours,
                    rate=line.rate,
                    amount=line.amount,
                    kind=line.kind,
                )
                for line in sorted(invoice.lines, key=lambda l: l.position)
            ),
        )

    async def render_invoice_pdf(self, organization_id: UUID, invoice_id: UUID) -> RenderedDocument:
        """Render the invoice through the configured renderer."""
        invoice = await self.get_invoice(organization_id, invoice_id)
        return self.renderer.render(self.to_document(invoice))

    async def send_invoice(
        self, actor: Actor, invoice_id: UUID, to_email: str | None = None
    ) -> Invoice:
        """Deliver the invoice; a draft becomes sent only on successful delivery.

        Re-sending a sent or overdue invoice delivers again without a status
        change.

        Raises:
            InvalidStateError: invoice is paid or cancelled
            ValidationError: no recipient address
            DeliveryError: the provider failed or rejected the delivery
        """
        invoice = await self.get_invoice(actor.organization_id, invoice_id)
        if not InvoiceStateMachine.can_send(invoice.status):
            raise InvalidStateError(
                f"A {invoice.status} invoice cannot be sent", current_state=invoice.status
            )
        recipient = (to_email or invoice.to_email or invoice.client_email or "").strip()
        if not recipient:
            raise ValidationError("No recipient e-mail address for the invoice", field="to_email")

        document = self.to_document(invoice)
        attachment = self.renderer.render(document)
        try:
            result = await self.delivery.deliver(document, recipient, attachment)
        except Exception as e:
            logger.exception("Delivery of invoice %s to %s failed", invoice.number, recipient)
            raise DeliveryError(f"Invoice delivery failed: {e}", invoice_id=invoice.id) from e
        if not result.accepted:
            logger.warning("Delivery of invoice %s rejected: %s", invoice.number, result.message)
            raise DeliveryError(
                f"Invoice delivery was rejected: {result.message}", invoice_id=invoice.id
            )

        if invoice.status == InvoiceStatus.DRAFT:
            InvoiceStateMachine.validate_transition(invoice.status, InvoiceStatus.SENT)
            invoice.status = InvoiceStatus.SENT.value
            invoice.sent_at = self._now()
        invoice.to_email = recipient
        await self.session.flush()

        logger.info("Invoice %s sent to %s", invoice.number, recipient)
        self.emitter.emit(
            InvoiceSent(
                metadata=self._metadata(actor),
                invoice_id=invoice.id,
                number=invoice.number,
                to_email=recipient,
            )
        )
        return invoice

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def cancel_invoice(self, actor: Actor, invoice_id: UUID) -> Invoice:
        """Cancel the invoice and release its entries and expenses to unbilled."""
        invoice = await self.get_invoice(actor.organization_id, invoice_id)
        InvoiceStateMachine.validate_transition(invoice.status, InvoiceStatus.CANCELLED)

        released = await self.session.execute(
            update(TimeEntry)
            .where(TimeEntry.invoice_id == invoice.id)
            .values(invoice_id=None, locked_at=None)
        )
        await self.session.execute(
            update(Expense).where(Expense.invoice_id == invoice.id).values(invoice_id=None)
        )
        invoice.status = InvoiceStatus.CANCELLED.value
        invoice.cancelled_at = self._now()
        await self.session.flush()
        await mark_financials_stale(self.session, invoice.project_id)

        logger.info("Invoice %s cancelled; %s entries released", invoice.number, released.rowcount)
        self.emitter.emit(
            InvoiceCancelled(
                metadata=self._metadata(actor),
                invoice_id=invoice.id,
                number=invoice.number,
                released_entries=released.rowcount or 0,
            )
        )
        return invoice

    async def mark_paid(
        self, actor: Actor, invoice_id: UUID, paid_at: datetime | None = None
    ) -> Invoice:
        invoice = await self.get_invoice(actor.organization_id, invoice_id)
        InvoiceStateMachine.validate_transition(invoice.status, InvoiceStatus.PAID)
        invoice.status = InvoiceStatus.PAID.value
        invoice.paid_at = ensure_utc(paid_at) if paid_at else self._now()
        await self.session.flush()
        logger.info("Invoice %s marked paid", invoice.number)
        return invoice

    async def mark_overdue_invoices(
        self, now: datetime | None = None, organization_id: UUID | None = None
    ) -> list[Invoice]:
        """Move sent invoices past their due date to overdue."""
        today = ensure_utc(now or self._now()).date()
        query = select(Invoice).where(
            Invoice.status == InvoiceStatus.SENT.value,
            Invoice.due_date.is_not(None),
            Invoice.due_date < today,
        )
        if organization_id is not None:
            query = query.where(Invoice.organization_id == organization_id)
        invoices = list((await self.session.execute(query)).scalars().all())

        for invoice in invoices:
            InvoiceStateMachine.validate_transition(invoice.status, InvoiceStatus.OVERDUE)
            invoice.status = InvoiceStatus.OVERDUE.value
        await self.session.flush()
        if invoices:
            logger.info("Marked %d invoices overdue", len(invoices))
        return invoices
