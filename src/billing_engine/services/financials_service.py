"""Financial aggregation: project snapshots, cost summaries and alerts."""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from billing_engine.calculators.line_builder import InvoiceLineBuilder
from billing_engine.calculators.rate_resolver import RateCache, RateNotFoundError, RateResolver
from billing_engine.calculators.types import RateType
from billing_engine.config import Settings, get_settings
from billing_engine.errors import ConflictError, CurrencyMismatchError, NotFoundError
from billing_engine.events import EventEmitter, EventMetadata, FinancialsRecomputed, default_emitter
from billing_engine.models import (
    Expense,
    Member,
    Project,
    ProjectFinancials,
    TimeEntry,
    utcnow,
)
from billing_engine.models.base import ensure_utc
from billing_engine.services.alert_service import AlertService, AlertSeverity, AlertType
from billing_engine.services.base import Clock, get_project_in_org

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


class ProjectLockRegistry:
    """One asyncio.Lock per project, so recomputes of a project run one at a time.

    Locks are held weakly: an entry disappears once no task holds or awaits it.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[UUID, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def __len__(self) -> int:
        return len(self._locks)

    def lock_for(self, project_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = self._locks[project_id] = asyncio.Lock()
        return lock


project_locks = ProjectLockRegistry()


@dataclass
class CostTotals:
    """Running totals of priced time at internal precision."""

    seconds: int = 0
    amount: Decimal = ZERO
    currencies: set[str] = field(default_factory=set)
    missing_rate_users: set[UUID] = field(default_factory=set)

    def add(self, seconds: int, amount: Decimal, currency: str) -> None:
        self.seconds += seconds
        self.amount += amount
        self.currencies.add(currency)

    @property
    def hours(self) -> Decimal:
        return InvoiceLineBuilder.hours(self.seconds)

    @property
    def rounded(self) -> Decimal:
        return InvoiceLineBuilder.round_to_cents(self.amount)

    def currency(self, fallback: str) -> str:
        return InvoiceLineBuilder.single_currency(self.currencies) or fallback


async def price_entries(
    resolver: RateResolver,
    entries: Iterable[TimeEntry],
    rate_type: RateType,
    missing_ok: bool,
) -> CostTotals:
    """Sum hours × resolved rate; rates resolve at each entry's end for its owner.

    With ``missing_ok`` an unresolvable rate counts as zero and the user is
    recorded in ``missing_rate_users``; otherwise RateNotFoundError propagates.
    """
    totals = CostTotals()
    for entry in entries:
        seconds = entry.duration_seconds or 0
        try:
            rate = await resolver.resolve(
                entry.project_id, rate_type, for_user_id=entry.user_id, at_ts=entry.end_ts
            )
        except RateNotFoundError:
            if not missing_ok:
                raise
            totals.seconds += seconds
            totals.missing_rate_users.add(entry.user_id)
            continue
        totals.add(seconds, InvoiceLineBuilder.amount_for(seconds, rate.hourly_rate), rate.currency)
    return totals


def margin_percent(profit: Decimal, revenue: Decimal) -> Decimal | None:
    """profit / revenue × 100 at 2 decimals; None when revenue is zero."""
    if revenue == 0:
        return None
    return (profit / revenue * HUNDRED).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class UserCost:
    user_id: UUID
    user_email: str
    hours: Decimal
    cost: Decimal
    currency: str


@dataclass(frozen=True)
class ProjectUserCosts:
    project_id: UUID
    start: datetime | None
    end: datetime | None
    currency: str
    total_hours: Decimal
    total_cost: Decimal
    users: list[UserCost]


@dataclass(frozen=True)
class MyProjectCost:
    project_id: UUID
    user_id: UUID
    start: datetime | None
    end: datetime | None
    hours: Decimal
    cost: Decimal
    currency: str


@dataclass(frozen=True)
class LeaderboardRow:
    project_id: UUID
    project_name: str
    currency: str
    revenue: Decimal
    cost: Decimal
    profit: Decimal
    margin_percent: Decimal | None
    billable_hours: Decimal


class FinancialsService:
    """Service for project financial snapshots.

    recompute() is deterministic: the same entries, expenses and rates give
    the same figures. Writes are serialized per project in-process and
    guarded by the snapshot's version column across processes.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        clock: Clock = utcnow,
        emitter: EventEmitter | None = None,
        rate_cache: RateCache | None = None,
        locks: ProjectLockRegistry | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.clock = clock
        self.emitter = emitter or default_emitter
        self.rate_cache = rate_cache
        self.locks = locks if locks is not None else project_locks
        self.alerts = AlertService(session, clock=clock, emitter=self.emitter)

    def _resolver(self) -> RateResolver:
        return RateResolver(self.session, cache=self.rate_cache)

    def _now(self) -> datetime:
        return ensure_utc(self.clock())

    async def _load_project(self, project_id: UUID, organization_id: UUID | None) -> Project:
        if organization_id is not None:
            return await get_project_in_org(self.session, organization_id, project_id)
        project = await self.session.get(Project, project_id)
        if project is None:
            raise NotFoundError(f"Project {project_id} not found", project_id=project_id)
        return project

    async def _load_snapshot(self, project_id: UUID) -> ProjectFinancials | None:
        result = await self.session.execute(
            select(ProjectFinancials)
            .where(ProjectFinancials.project_id == project_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def _finalized_entries(
        self,
        project_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
        user_id: UUID | None = None,
    ) -> list[TimeEntry]:
        query = select(TimeEntry).where(
            TimeEntry.project_id == project_id, TimeEntry.end_ts.is_not(None)
        )
        if start is not None:
            query = query.where(TimeEntry.start_ts >= ensure_utc(start))
        if end is not None:
            query = query.where(TimeEntry.start_ts < ensure_utc(end))
        if user_id is not None:
            query = query.where(TimeEntry.user_id == user_id)
        result = await self.session.execute(query.order_by(TimeEntry.start_ts, TimeEntry.id))
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    async def recompute(
        self, project_id: UUID, organization_id: UUID | None = None
    ) -> ProjectFinancials:
        """Rebuild and persist the project's financial snapshot.

        Raises:
            NotFoundError: unknown project, or a billable rate is missing
            CurrencyMismatchError: rates and expenses mix currencies
            ConflictError: another writer stored a newer snapshot meanwhile
        """
        async with self.locks.lock_for(project_id):
            project = await self._load_project(project_id, organization_id)
            return await self._recompute_locked(project)

    async def _recompute_locked(self, project: Project) -> ProjectFinancials:
        resolver = self._resolver()
        entries = await self._finalized_entries(project.id)

        revenue_totals = await price_entries(
            resolver, (e for e in entries if e.billable), RateType.BILLABLE, missing_ok=False
        )
        cost_totals = await price_entries(resolver, entries, RateType.COST, missing_ok=True)

        expenses = (
            await self.session.execute(select(Expense).where(Expense.project_id == project.id))
        ).scalars().all()
        expense_total = sum((Decimal(e.amount) for e in expenses), ZERO)

        currencies = revenue_totals.currencies | cost_totals.currencies | {e.currency for e in expenses}
        if len(currencies) > 1:
            raise CurrencyMismatchError(currencies)
        currency = (
            next(iter(currencies), None) or project.currency or self.settings.default_currency
        )

        revenue = revenue_totals.rounded
        freelancer_cost = cost_totals.rounded
        expenses_amount = InvoiceLineBuilder.round_to_cents(expense_total)
        profit = revenue - freelancer_cost - expenses_amount

        notes: dict[str, Any] = {
            "entry_count": len(entries),
            "expense_count": len(expenses),
        }
        if cost_totals.missing_rate_users:
            notes["missing_cost_rates"] = sorted(str(u) for u in cost_totals.missing_rate_users)

        now = self._now()
        snapshot = await self._load_snapshot(project.id)
        if snapshot is None:
            snapshot = ProjectFinancials(project_id=project.id, organization_id=project.organization_id)
            self.session.add(snapshot)

        snapshot.currency = currency
        snapshot.revenue = revenue
        snapshot.freelancer_cost = freelancer_cost
        snapshot.expenses = expenses_amount
        snapshot.profit = profit
        snapshot.margin_percent = margin_percent(profit, revenue)
        snapshot.billable_hours = revenue_totals.hours
        snapshot.budget_amount = project.budget_amount
        snapshot.projected_end_date = project.projected_end_date
        snapshot.notes = notes
        snapshot.last_updated = now
        snapshot.is_stale = False
        try:
            await self.session.flush()
        except StaleDataError:
            raise ConflictError(
                "Financials were recomputed concurrently; retry", project_id=project.id
            ) from None

        logger.info(
            "Recomputed financials for project %s v%s: revenue=%s cost=%s expenses=%s %s",
            project.id,
            snapshot.version,
            revenue,
            freelancer_cost,
            expenses_amount,
            currency,
        )
        await self._check_thresholds(project, snapshot)
        self.emitter.emit(
            FinancialsRecomputed(
                metadata=EventMetadata.create(project.organization_id, timestamp=now),
                project_id=project.id,
                version=snapshot.version,
                currency=currency,
                revenue=revenue,
                profit=profit,
            )
        )
        return snapshot

    async def get_financials(
        self, project_id: UUID, organization_id: UUID | None = None
    ) -> ProjectFinancials:
        """Current snapshot; recomputed when missing, stale or too old."""
        await self._load_project(project_id, organization_id)
        snapshot = await self._load_snapshot(project_id)
        if snapshot is not None and not self._needs_refresh(snapshot):
            return snapshot
        return await self.recompute(project_id, organization_id)

    def _needs_refresh(self, snapshot: ProjectFinancials) -> bool:
        if snapshot.is_stale:
            return True
        max_age = timedelta(seconds=self.settings.financials_max_age_seconds)
        return self._now() - snapshot.last_updated > max_age

    async def _check_thresholds(self, project: Project, snapshot: ProjectFinancials) -> None:
        spent = snapshot.freelancer_cost + snapshot.expenses
        budget = snapshot.budget_amount
        if budget is not None and budget > 0:
            if spent > budget:
                await self.alerts.raise_alert(
                    project.organization_id,
                    AlertType.BUDGET_EXCEEDED,
                    AlertSeverity.HIGH,
                    project_id=project.id,
                    threshold=budget,
                    current_value=spent,
                    currency=snapshot.currency,
                )
            elif spent >= budget * self.settings.budget_warning_ratio:
                await self.alerts.raise_alert(
                    project.organization_id,
                    AlertType.BUDGET_WARNING,
                    AlertSeverity.MEDIUM,
                    project_id=project.id,
                    threshold=InvoiceLineBuilder.round_to_cents(
                        budget * self.settings.budget_warning_ratio
                    ),
                    current_value=spent,
                    currency=snapshot.currency,
                )

        margin = snapshot.margin_percent
        if margin is not None and margin < self.settings.low_margin_percent:
            await self.alerts.raise_alert(
                project.organization_id,
                AlertType.LOW_MARGIN,
                AlertSeverity.HIGH if margin < 0 else AlertSeverity.MEDIUM,
                project_id=project.id,
                threshold=self.settings.low_margin_percent,
                current_value=margin,
                currency=snapshot.currency,
            )

    # ------------------------------------------------------------------
    # Cost summaries
    # ------------------------------------------------------------------

    async def my_project_cost(
        self,
        organization_id: UUID,
        user_id: UUID,
        project_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> MyProjectCost:
        """Cost of one user's finalized time on a project."""
        project = await self._load_project(project_id, organization_id)
        entries = await self._finalized_entries(project_id, start, end, user_id=user_id)
        totals = await price_entries(self._resolver(), entries, RateType.COST, missing_ok=True)
        return MyProjectCost(
            project_id=project_id,
            user_id=user_id,
            start=start,
            end=end,
            hours=totals.hours,
            cost=totals.rounded,
            currency=totals.currency(project.currency or self.settings.default_currency),
        )

    async def project_user_costs(
        self,
        organization_id: UUID,
        project_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> ProjectUserCosts:
        """Per-member hours and cost on a project, most expensive first."""
        project = await self._load_project(project_id, organization_id)
        entries = await self._finalized_entries(project_id, start, end)
        resolver = self._resolver()

        by_user: dict[UUID, list[TimeEntry]] = defaultdict(list)
        for entry in entries:
            by_user[entry.user_id].append(entry)

        emails: dict[UUID, str] = {}
        if by_user:
            members = await self.session.execute(
                select(Member).where(
                    Member.organization_id == organization_id,
                    Member.user_id.in_(list(by_user)),
                )
            )
            emails = {m.user_id: m.email for m in members.scalars()}

        fallback = project.currency or self.settings.default_currency
        all_currencies: set[str] = set()
        users: list[UserCost] = []
        total_seconds = 0
        total_amount = ZERO
        for user_id, user_entries in by_user.items():
            totals = await price_entries(resolver, user_entries, RateType.COST, missing_ok=True)
            all_currencies |= totals.currencies
            total_seconds += totals.seconds
            total_amount += totals.amount
            users.append(
                UserCost(
                    user_id=user_id,
                    user_email=emails.get(user_id, str(user_id)),
                    hours=totals.hours,
                    cost=totals.rounded,
                    currency=totals.currency(fallback),
                )
            )

        users.sort(key=lambda u: (-u.cost, u.user_email))
        return ProjectUserCosts(
            project_id=project_id,
            start=start,
            end=end,
            currency=InvoiceLineBuilder.single_currency(all_currencies) or fallback,
            total_hours=InvoiceLineBuilder.hours(total_seconds),
            total_cost=InvoiceLineBuilder.round_to_cents(total_amount),
            users=users,
        )

    async def leaderboard(self, organization_id: UUID, limit: int = 20) -> list[LeaderboardRow]:
        """Projects of the organization ranked by profit.

        Projects whose figures cannot be computed (missing billable rate,
        mixed currencies) are left out and logged.
        """
        projects = (
            await self.session.execute(
                select(Project).where(Project.organization_id == organization_id)
            )
        ).scalars().all()

        rows: list[LeaderboardRow] = []
        for project in projects:
            try:
                snapshot = await self.get_financials(project.id, organization_id)
            except (RateNotFoundError, CurrencyMismatchError) as e:
                logger.warning("Leaderboard skips project %s: %s", project.id, e)
                continue
            rows.append(
                LeaderboardRow(
                    project_id=project.id,
                    project_name=project.name,
                    currency=snapshot.currency,
                    revenue=snapshot.revenue,
                    cost=snapshot.freelancer_cost + snapshot.expenses,
                    profit=snapshot.profit,
                    margin_percent=snapshot.margin_percent,
                    billable_hours=snapshot.billable_hours,
                )
            )

        rows.sort(key=lambda r: (-r.profit, r.project_name))
        return rows[:limit]
