"""FastAPI dependencies for dependency injection."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.config import Settings, get_settings
from billing_engine.database import init_db
from billing_engine.errors import ValidationError
from billing_engine.providers import (
    InvoiceDeliveryProvider,
    InvoiceRenderer,
    LoggingDeliveryProvider,
    PlainTextInvoiceRenderer,
)
from billing_engine.services import (
    FINANCE_READ,
    FINANCE_WRITE,
    Actor,
    AlertService,
    ExpenseService,
    FinancialsService,
    InvoiceService,
    PayoutService,
    RateService,
    TimerService,
)


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency; commits when the request succeeds."""
    _, factory = init_db()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def _parse_uuid(value: str | None, header: str) -> UUID:
    if not value:
        raise ValidationError(f"{header} header is required", field=header)
    try:
        return UUID(value)
    except ValueError:
        raise ValidationError(f"Invalid {header} format", field=header) from None


async def get_actor(
    x_organization_id: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
    x_permissions: Annotated[str | None, Header()] = None,
) -> Actor:
    """Build the acting principal from identity headers set by the gateway."""
    permissions = frozenset(
        p.strip() for p in (x_permissions or "").split(",") if p.strip()
    )
    return Actor(
        organization_id=_parse_uuid(x_organization_id, "X-Organization-ID"),
        user_id=_parse_uuid(x_user_id, "X-User-ID"),
        permissions=permissions,
    )


async def require_finance_read(actor: Annotated[Actor, Depends(get_actor)]) -> Actor:
    actor.require(FINANCE_READ)
    return actor


async def require_finance_write(actor: Annotated[Actor, Depends(get_actor)]) -> Actor:
    actor.require(FINANCE_WRITE)
    return actor


def get_delivery_provider() -> InvoiceDeliveryProvider:
    """Invoice delivery collaborator; override in tests or deployments."""
    return LoggingDeliveryProvider()


def get_invoice_renderer() -> InvoiceRenderer:
    return PlainTextInvoiceRenderer()


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
AppSettings = Annotated[Settings, Depends(get_settings)]
CurrentActor = Annotated[Actor, Depends(get_actor)]
FinanceReader = Annotated[Actor, Depends(require_finance_read)]
FinanceWriter = Annotated[Actor, Depends(require_finance_write)]


def get_timer_service(db: DbSession, settings: AppSettings) -> TimerService:
    return TimerService(db, settings=settings)


def get_rate_service(db: DbSession) -> RateService:
    return RateService(db)


def get_financials_service(db: DbSession, settings: AppSettings) -> FinancialsService:
    return FinancialsService(db, settings=settings)


def get_expense_service(db: DbSession) -> ExpenseService:
    return ExpenseService(db)


def get_invoice_service(
    db: DbSession,
    settings: AppSettings,
    delivery: Annotated[InvoiceDeliveryProvider, Depends(get_delivery_provider)],
    renderer: Annotated[InvoiceRenderer, Depends(get_invoice_renderer)],
) -> InvoiceService:
    return InvoiceService(db, settings=settings, delivery=delivery, renderer=renderer)


def get_payout_service(db: DbSession, settings: AppSettings) -> PayoutService:
    return PayoutService(db, settings=settings)


def get_alert_service(db: DbSession) -> AlertService:
    return AlertService(db)


Timers = Annotated[TimerService, Depends(get_timer_service)]
Rates = Annotated[RateService, Depends(get_rate_service)]
Financials = Annotated[FinancialsService, Depends(get_financials_service)]
Expenses = Annotated[ExpenseService, Depends(get_expense_service)]
Invoices = Annotated[InvoiceService, Depends(get_invoice_service)]
Payouts = Annotated[PayoutService, Depends(get_payout_service)]
Alerts = Annotated[AlertService, Depends(get_alert_service)]
