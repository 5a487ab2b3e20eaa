"""Domain event types for timer, financial, invoice and payout operations.

All events are immutable frozen dataclasses carrying an ``EventMetadata``
and an explicit payload. They are published after the state change they
describe has been flushed.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from billing_engine.models.base import utcnow


class EventCategory(str, Enum):
    """Event categories for routing and filtering."""

    TIMER = "timer"
    FINANCE = "finance"
    INVOICE = "invoice"
    PAYOUT = "payout"


@dataclass(frozen=True)
class EventMetadata:
    """Metadata attached to every domain event."""

    event_id: UUID
    timestamp: datetime
    organization_id: UUID
    actor_id: UUID | None
    actor_type: str  # 'user', 'system', 'scheduler'

    @classmethod
    def create(
        cls,
        organization_id: UUID,
        actor_id: UUID | None = None,
        actor_type: str | None = None,
        timestamp: datetime | None = None,
    ) -> EventMetadata:
        """Create metadata with auto-generated fields."""
        return cls(
            event_id=uuid4(),
            timestamp=timestamp or utcnow(),
            organization_id=organization_id,
            actor_id=actor_id,
            actor_type=actor_type or ("user" if actor_id else "system"),
        )


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all domain events."""

    metadata: EventMetadata

    @property
    def event_type(self) -> str:
        """Event type name for routing."""
        return self.__class__.__name__

    @property
    def category(self) -> EventCategory:
        raise NotImplementedError("Subclasses must define category")

    def to_dict(self) -> dict[str, Any]:
        data = _serialize(asdict(self))
        data["event_type"] = self.event_type
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


def _serialize(obj: Any) -> Any:
    """Recursively convert values for JSON compatibility."""
    if isinstance(obj, dict):
        return {k: _serialize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_serialize(v) for v in obj]
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    return obj


# =============================================================================
# Timer Events
# =============================================================================


@dataclass(frozen=True)
class TimerStarted(DomainEvent):
    time_entry_id: UUID
    user_id: UUID
    project_id: UUID
    start_ts: datetime

    @property
    def category(self) -> EventCategory:
        return EventCategory.TIMER


@dataclass(frozen=True)
class TimerStopped(DomainEvent):
    time_entry_id: UUID
    user_id: UUID
    project_id: UUID
    duration_seconds: int
    suggested_trim_seconds: int
    trim_applied: bool

    @property
    def category(self) -> EventCategory:
        return EventCategory.TIMER


@dataclass(frozen=True)
class IdleTrimApplied(DomainEvent):
    time_entry_id: UUID
    user_id: UUID
    trim_seconds: int
    duration_seconds: int

    @property
    def category(self) -> EventCategory:
        return EventCategory.TIMER


# =============================================================================
# Finance Events
# =============================================================================


@dataclass(frozen=True)
class FinancialsRecomputed(DomainEvent):
    project_id: UUID
    version: int
    currency: str
    revenue: Decimal
    profit: Decimal

    @property
    def category(self) -> EventCategory:
        return EventCategory.FINANCE


@dataclass(frozen=True)
class FinanceAlertRaised(DomainEvent):
    alert_id: UUID
    alert_type: str
    severity: str
    project_id: UUID | None
    subject_user_id: UUID | None
    current_value: Decimal | None

    @property
    def category(self) -> EventCategory:
        return EventCategory.FINANCE


# =============================================================================
# Invoice Events
# =============================================================================


@dataclass(frozen=True)
class InvoiceDrafted(DomainEvent):
    invoice_id: UUID
    project_id: UUID
    number: str
    total: Decimal
    currency: str
    entry_count: int

    @property
    def category(self) -> EventCategory:
        return EventCategory.INVOICE


@dataclass(frozen=True)
class InvoiceSent(DomainEvent):
    invoice_id: UUID
    number: str
    to_email: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.INVOICE


@dataclass(frozen=True)
class InvoiceCancelled(DomainEvent):
    invoice_id: UUID
    number: str
    released_entries: int

    @property
    def category(self) -> EventCategory:
        return EventCategory.INVOICE


# =============================================================================
# Payout Events
# =============================================================================


@dataclass(frozen=True)
class PayoutCreated(DomainEvent):
    payout_id: UUID
    freelancer_user_id: UUID
    amount: Decimal
    currency: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYOUT


@dataclass(frozen=True)
class PayoutCompleted(DomainEvent):
    payout_id: UUID
    freelancer_user_id: UUID
    payout_reference: str
    paid_at: datetime

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYOUT


@dataclass(frozen=True)
class PayoutFailed(DomainEvent):
    payout_id: UUID
    freelancer_user_id: UUID
    failure_reason: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYOUT
