"""API routes."""

from billing_engine.api.routes.alerts import router as alerts_router
from billing_engine.api.routes.expenses import router as expenses_router
from billing_engine.api.routes.financials import router as financials_router
from billing_engine.api.routes.health import router as health_router
from billing_engine.api.routes.invoices import router as invoices_router
from billing_engine.api.routes.payouts import router as payouts_router
from billing_engine.api.routes.rates import router as rates_router
from billing_engine.api.routes.time_entries import router as time_entries_router
from billing_engine.api.routes.timers import router as timers_router

__all__ = [
    "alerts_router",
    "expenses_router",
    "financials_router",
    "health_router",
    "invoices_router",
    "payouts_router",
    "rates_router",
    "time_entries_router",
    "timers_router",
]
