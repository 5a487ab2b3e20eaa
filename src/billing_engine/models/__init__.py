"""ORM models for the billing engine."""

from billing_engine.models.base import Base, UTCDateTime, ensure_utc, utcnow
from billing_engine.models.directory import Client, Member, Project
from billing_engine.models.finance import Expense, FinanceAlert, ProjectFinancials, Rate
from billing_engine.models.invoice import Invoice, InvoiceLine
from billing_engine.models.payout import Payout
from billing_engine.models.time_entry import ActivityHeartbeat, TimeEntry

__all__ = [
    "ActivityHeartbeat",
    "Base",
    "Client",
    "Expense",
    "FinanceAlert",
    "Invoice",
    "InvoiceLine",
    "Member",
    "Payout",
    "Project",
    "ProjectFinancials",
    "Rate",
    "TimeEntry",
    "UTCDateTime",
    "ensure_utc",
    "utcnow",
]
