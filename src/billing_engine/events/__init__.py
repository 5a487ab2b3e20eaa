"""Domain events package."""

from billing_engine.events.emitter import EventEmitter, EventHandler, default_emitter
from billing_engine.events.types import (
    DomainEvent,
    EventCategory,
    EventMetadata,
    FinanceAlertRaised,
    FinancialsRecomputed,
    IdleTrimApplied,
    InvoiceCancelled,
    InvoiceDrafted,
    InvoiceSent,
    PayoutCompleted,
    PayoutCreated,
    PayoutFailed,
    TimerStarted,
    TimerStopped,
)

__all__ = [
    "DomainEvent",
    "EventCategory",
    "EventEmitter",
    "EventHandler",
    "EventMetadata",
    "FinanceAlertRaised",
    "FinancialsRecomputed",
    "IdleTrimApplied",
    "InvoiceCancelled",
    "InvoiceDrafted",
    "InvoiceSent",
    "PayoutCompleted",
    "PayoutCreated",
    "PayoutFailed",
    "TimerStarted",
    "TimerStopped",
    "default_emitter",
]
