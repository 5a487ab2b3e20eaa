"""Pure calculation helpers: durations, rate resolution and invoice lines."""

from billing_engine.calculators.line_builder import InvoiceLineBuilder
from billing_engine.calculators.rate_resolver import RateNotFoundError, RateResolver
from billing_engine.calculators.types import (
    AdjustmentType,
    IdleSuggestion,
    Interval,
    RateScope,
    RateType,
    ResolvedRate,
)

__all__ = [
    "AdjustmentType",
    "IdleSuggestion",
    "Interval",
    "InvoiceLineBuilder",
    "RateNotFoundError",
    "RateResolver",
    "RateScope",
    "RateType",
    "ResolvedRate",
]
