"""Type definitions for the calculation pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from billing_engine.models.base import ensure_utc

ONE_SECOND = timedelta(seconds=1)


class RateScope(str, Enum):
    """Entity a rate applies to, most specific first."""

    USER = "user"
    PROJECT = "project"
    CLIENT = "client"
    DEFAULT = "default"


class RateType(str, Enum):
    """Client-facing price vs. cost basis."""

    BILLABLE = "billable"
    COST = "cost"

    @classmethod
    def parse(cls, value: str | RateType) -> RateType:
        """Accept ``internal`` as the legacy name of the cost rate."""
        if isinstance(value, RateType):
            return value
        if value == "internal":
            return cls.COST
        return cls(value)


class TimeEntrySource(str, Enum):
    TIMER = "timer"
    MANUAL = "manual"
    CALENDAR = "calendar"
    IMPORT = "import"


class AdjustmentType(str, Enum):
    """Uniform transforms accepted by bulk adjust."""

    SET_DURATION = "set_duration"
    MULTIPLY = "multiply"
    ADD_SECONDS = "add_seconds"


@dataclass(frozen=True)
class ResolvedRate:
    """Output of rate resolution. Never persisted."""

    hourly_rate: Decimal
    currency: str
    rate_type: RateType
    resolved_scope: RateScope
    resolved_scope_id: UUID | None
    rate_id: UUID

    @property
    def source(self) -> str:
        """Human readable origin, e.g. ``project rate``."""
        if self.resolved_scope == RateScope.DEFAULT:
            return "organization default rate"
        return f"{self.resolved_scope.value} rate"


@dataclass(frozen=True)
class Interval:
    """Half-open time interval [start, end); ``end`` None means open."""

    start: datetime
    end: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.end is None

    def length(self, until: datetime | None = None) -> timedelta:
        """Exact length; open intervals are measured to ``until``."""
        end = self.end if self.end is not None else until
        if end is None:
            raise ValueError("Open interval needs an 'until' bound")
        return max(timedelta(0), end - self.start)

    def seconds(self, until: datetime | None = None) -> int:
        """Length in whole seconds."""
        return self.length(until) // ONE_SECOND

    def to_dict(self) -> dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat() if self.end is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Interval:
        start = data["start"]
        end = data.get("end")
        if isinstance(start, str):
            start = datetime.fromisoformat(start)
        if isinstance(end, str):
            end = datetime.fromisoformat(end)
        return cls(
            start=ensure_utc(start),
            end=ensure_utc(end) if end is not None else None,
        )


@dataclass(frozen=True)
class IdleSuggestion:
    """Advisory idle detection result stored on a stopped entry."""

    idle_seconds: int
    idle_percent: float
    suggested_trim_seconds: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "idle_seconds": self.idle_seconds,
            "idle_percent": self.idle_percent,
            "suggested_trim_seconds": self.suggested_trim_seconds,
        }


@dataclass
class LineCandidate:
    """An invoice line before persistence."""

    kind: str  # 'time' or 'expense'
    description: str
    hours: Decimal
    rate: Decimal
    amount: Decimal
    currency: str
    sort_key: str = ""
