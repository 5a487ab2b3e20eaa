"""Billing engine services."""

from billing_engine.services.alert_service import AlertService, AlertSeverity, AlertType
from billing_engine.services.base import FINANCE_READ, FINANCE_WRITE, Actor
from billing_engine.services.expense_service import ExpenseService
from billing_engine.services.financials_service import FinancialsService
from billing_engine.services.invoice_service import InvoiceService
from billing_engine.services.payout_service import PayoutService
from billing_engine.services.rate_service import RateService
from billing_engine.services.state_machine import (
    InvoiceStateMachine,
    InvoiceStatus,
    PayoutStateMachine,
    PayoutStatus,
    TimerStateMachine,
)
from billing_engine.services.timer_service import TimerService

__all__ = [
    "Actor",
    "AlertService",
    "AlertSeverity",
    "AlertType",
    "ExpenseService",
    "FINANCE_READ",
    "FINANCE_WRITE",
    "FinancialsService",
    "InvoiceService",
    "InvoiceStateMachine",
    "InvoiceStatus",
    "PayoutService",
    "PayoutStateMachine",
    "PayoutStatus",
    "RateService",
    "TimerService",
    "TimerStateMachine",
]
