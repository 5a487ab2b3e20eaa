"""Invoice line builder and money rounding helpers."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Sequence
from uuid import UUID

from billing_engine.calculators.types import LineCandidate, ResolvedRate
from billing_engine.errors import CurrencyMismatchError

SECONDS_PER_HOUR = Decimal(3600)


@dataclass(frozen=True)
class BillableTime:
    """A finalized entry paired with the billable rate resolved for it."""

    entry_id: UUID
    task_id: UUID | None
    description: str | None
    start_ts: datetime
    seconds: int
    rate: ResolvedRate


@dataclass(frozen=True)
class BillableExpense:
    expense_id: UUID
    category: str
    description: str
    amount: Decimal
    currency: str
    incurred_at: datetime | None


class InvoiceLineBuilder:
    """Builds invoice lines from billable time and expenses.

    Rounding:
    - Internal compute at 4 decimals
    - Money rounded half-up to cents once, at the line (or total) level
    - Hours kept at 4 decimals

    Time is grouped by task (or by description when there is no task); a
    group is split by distinct rate so every line satisfies
    ``amount = hours × rate``.
    """

    PRECISION = Decimal("0.0001")  # 4 decimal places for internal calculations
    OUTPUT_PRECISION = Decimal("0.01")  # 2 decimal places for persistence
    DEFAULT_DESCRIPTION = "Tracked time"

    @staticmethod
    def round_to_cents(amount: Decimal) -> Decimal:
        """Round amount to 2 decimal places (cents)."""
        return amount.quantize(InvoiceLineBuilder.OUTPUT_PRECISION, rounding=ROUND_HALF_UP)

    @staticmethod
    def hours(seconds: int) -> Decimal:
        """Seconds as hours at internal precision."""
        return (Decimal(seconds) / SECONDS_PER_HOUR).quantize(
            InvoiceLineBuilder.PRECISION, rounding=ROUND_HALF_UP
        )

    @staticmethod
    def amount_for(seconds: int, hourly_rate: Decimal) -> Decimal:
        """Unrounded-to-cents money for ``seconds`` at ``hourly_rate``."""
        return (Decimal(seconds) * hourly_rate / SECONDS_PER_HOUR).quantize(
            InvoiceLineBuilder.PRECISION, rounding=ROUND_HALF_UP
        )

    @staticmethod
    def single_currency(currencies: Iterable[str]) -> str | None:
        """The one currency in use, None if empty; CurrencyMismatchError if mixed."""
        distinct = set(currencies)
        if len(distinct) > 1:
            raise CurrencyMismatchError(distinct)
        return next(iter(distinct), None)

    @classmethod
    def group_key(cls, item: BillableTime) -> str:
        if item.task_id is not None:
            return f"task:{item.task_id}"
        text = (item.description or "").strip().lower()
        return f"desc:{text}"

    @classmethod
    def build_time_lines(cls, items: Sequence[BillableTime]) -> list[LineCandidate]:
        """Group time by task/description, then by rate."""
        groups: dict[tuple[str, Decimal, str], list[BillableTime]] = defaultdict(list)
        for item in items:
            key = (cls.group_key(item), item.rate.hourly_rate, item.rate.currency)
            groups[key].append(item)

        rates_per_label: dict[str, set[Decimal]] = defaultdict(set)
        for label, rate, _ in groups:
            rates_per_label[label].add(rate)

        lines: list[tuple[datetime, str, LineCandidate]] = []
        for (label, rate, currency), members in groups.items():
            members.sort(key=lambda m: (m.start_ts, str(m.entry_id)))
            seconds = sum(m.seconds for m in members)
            description = next(
                (m.description.strip() for m in members if m.description and m.description.strip()),
                cls.DEFAULT_DESCRIPTION,
            )
            if len(rates_per_label[label]) > 1:
                description = f"{description} @ {rate.normalize():f}/h"
            lines.append(
                (
                    members[0].start_ts,
                    f"{label}|{rate}",
                    LineCandidate(
                        kind="time",
                        description=description,
                        hours=cls.hours(seconds),
                        rate=rate,
                        amount=cls.round_to_cents(cls.amount_for(seconds, rate)),
                        currency=currency,
                        sort_key=label,
                    ),
                )
            )

        lines.sort(key=lambda entry: (entry[0], entry[1]))
        return [line for _, _, line in lines]

    @classmethod
    def build_expense_lines(cls, expenses: Sequence[BillableExpense]) -> list[LineCandidate]:
        """One line per expense: hours 0, rate = amount = expense amount."""
        ordered = sorted(
            expenses,
            key=lambda e: (e.incurred_at is None, e.incurred_at or datetime.max, str(e.expense_id)),
        )
        return [
            LineCandidate(
                kind="expense",
                description=f"{e.category}: {e.description}",
                hours=Decimal("0"),
                rate=cls.round_to_cents(e.amount),
                amount=cls.round_to_cents(e.amount),
                currency=e.currency,
                sort_key=f"expense:{e.expense_id}",
            )
            for e in ordered
        ]

    @classmethod
    def build(
        cls,
        time_items: Sequence[BillableTime],
        expenses: Sequence[BillableExpense] = (),
    ) -> tuple[list[LineCandidate], str | None]:
        """Build all invoice lines and return them with their common currency.

        Raises:
            CurrencyMismatchError: lines would mix currencies
        """
        lines = cls.build_time_lines(time_items) + cls.build_expense_lines(expenses)
        currency = cls.single_currency(line.currency for line in lines)
        return lines, currency
