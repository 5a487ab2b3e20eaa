"""Hourly rate resolution over the user → project → client → default cascade."""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.calculators.types import RateScope, RateType, ResolvedRate
from billing_engine.config import get_settings
from billing_engine.errors import NotFoundError
from billing_engine.models import Project, Rate, utcnow
from billing_engine.models.base import ensure_utc


class RateNotFoundError(NotFoundError):
    """Raised when no scope yields a matching rate (rate not configured)."""

    def __init__(
        self,
        project_id: UUID,
        rate_type: RateType,
        at_ts: datetime,
        user_id: UUID | None,
    ):
        self.project_id = project_id
        self.rate_type = rate_type
        self.at_ts = at_ts
        self.user_id = user_id
        super().__init__(
            f"No {rate_type.value} rate configured for project {project_id} "
            f"(user {user_id}) at {at_ts.isoformat()}",
            project_id=project_id,
            rate_type=rate_type.value,
        )


@dataclass(frozen=True)
class RateRow:
    """Session-independent copy of a Rate row, safe to cache."""

    id: UUID
    scope: RateScope
    scope_id: UUID | None
    rate_type: RateType
    currency: str
    hourly_rate: Decimal
    effective_from: datetime | None
    effective_to: datetime | None
    created_at: datetime

    @classmethod
    def from_model(cls, rate: Rate) -> RateRow:
        return cls(
            id=rate.id,
            scope=RateScope(rate.scope),
            scope_id=rate.scope_id,
            rate_type=RateType(rate.rate_type),
            currency=rate.currency,
            hourly_rate=Decimal(rate.hourly_rate),
            effective_from=rate.effective_from,
            effective_to=rate.effective_to,
            created_at=rate.created_at,
        )

    def is_active_at(self, at_ts: datetime) -> bool:
        if self.effective_from is not None and at_ts < self.effective_from:
            return False
        if self.effective_to is not None and at_ts >= self.effective_to:
            return False
        return True


CacheKey = tuple[UUID, RateScope, "UUID | None", RateType]


class RateCache:
    """Short-TTL cache of rate rows per (organization, scope, scope_id, rate_type).

    All currencies of a key are cached together; resolution filters them.
    """

    def __init__(
        self,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = (
            ttl_seconds if ttl_seconds is not None else get_settings().rate_cache_ttl_seconds
        )
        self._clock = clock
        self._entries: dict[CacheKey, tuple[float, tuple[RateRow, ...]]] = {}

    def get(self, key: CacheKey) -> tuple[RateRow, ...] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, rows = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[key]
            return None
        return rows

    def put(self, key: CacheKey, rows: Sequence[RateRow]) -> None:
        if self.ttl_seconds <= 0:
            return
        self._entries[key] = (self._clock(), tuple(rows))

    def invalidate(
        self,
        organization_id: UUID,
        scope: RateScope,
        scope_id: UUID | None,
        rate_type: RateType,
    ) -> None:
        self._entries.pop((organization_id, scope, scope_id, rate_type), None)

    def clear(self) -> None:
        self._entries.clear()


default_rate_cache = RateCache()


@dataclass(frozen=True)
class RateContext:
    """Everything a scope strategy needs to pick its scope_id."""

    organization_id: UUID
    project_id: UUID
    client_id: UUID | None
    user_id: UUID | None


@dataclass(frozen=True)
class ScopeStrategy:
    """One step of the cascade: which scope, and which id within it."""

    scope: RateScope
    scope_id_for: Callable[[RateContext], "UUID | None"]
    requires_id: bool = True


UserScope = ScopeStrategy(RateScope.USER, lambda ctx: ctx.user_id)
ProjectScope = ScopeStrategy(RateScope.PROJECT, lambda ctx: ctx.project_id)
ClientScope = ScopeStrategy(RateScope.CLIENT, lambda ctx: ctx.client_id)
DefaultScope = ScopeStrategy(RateScope.DEFAULT, lambda ctx: None, requires_id=False)

SCOPE_PRIORITY: tuple[ScopeStrategy, ...] = (UserScope, ProjectScope, ClientScope, DefaultScope)


def select_rate(
    rows: Sequence[RateRow],
    rate_type: RateType,
    at_ts: datetime,
    currency: str | None = None,
) -> RateRow | None:
    """Pick the row active at ``at_ts`` within one scope.

    Several qualifying rows should not exist; if they do, the latest
    effective_from wins, then the latest created_at, then the id.
    """
    candidates = [
        row
        for row in rows
        if row.rate_type == rate_type
        and (currency is None or row.currency == currency)
        and row.is_active_at(at_ts)
    ]
    if not candidates:
        return None
    return max(
        candidates,
        key=lambda row: (
            row.effective_from is not None,
            row.effective_from or datetime.min,
            row.created_at,
            str(row.id),
        ),
    )


class RateResolver:
    """Resolves hourly rates by walking the scope cascade.

    Rate selection priority:
    1. User rate (for_user_id, else the acting user)
    2. Project rate
    3. Client rate (via the project's client)
    4. Organization default rate

    Within a scope the effective window [effective_from, effective_to) must
    contain the instant; a missing bound is unbounded on that side.
    """

    def __init__(
        self,
        session: AsyncSession,
        cache: RateCache | None = None,
        strategies: Sequence[ScopeStrategy] = SCOPE_PRIORITY,
    ):
        self.session = session
        self.cache = cache if cache is not None else default_rate_cache
        self.strategies = tuple(strategies)
        self._projects: dict[UUID, Project] = {}

    async def resolve(
        self,
        project_id: UUID,
        rate_type: RateType | str = RateType.BILLABLE,
        for_user_id: UUID | None = None,
        at_ts: datetime | None = None,
        currency: str | None = None,
        *,
        actor_user_id: UUID | None = None,
    ) -> ResolvedRate:
        """Resolve the rate for a project/user at an instant.

        Raises:
            NotFoundError: the project does not exist
            RateNotFoundError: no scope has a matching rate
        """
        project = await self._get_project(project_id)
        return await self.resolve_for_project(
            project,
            rate_type,
            for_user_id=for_user_id or actor_user_id,
            at_ts=at_ts,
            currency=currency,
        )

    async def resolve_for_project(
        self,
        project: Project,
        rate_type: RateType | str,
        for_user_id: UUID | None = None,
        at_ts: datetime | None = None,
        currency: str | None = None,
    ) -> ResolvedRate:
        rate_type = RateType.parse(rate_type)
        at_ts = ensure_utc(at_ts) if at_ts is not None else utcnow()
        context = RateContext(
            organization_id=project.organization_id,
            project_id=project.id,
            client_id=project.client_id,
            user_id=for_user_id,
        )

        for strategy in self.strategies:
            scope_id = strategy.scope_id_for(context)
            if strategy.requires_id and scope_id is None:
                continue
            rows = await self._rows_for(context.organization_id, strategy.scope, scope_id, rate_type)
            match = select_rate(rows, rate_type, at_ts, currency)
            if match is not None:
                return ResolvedRate(
                    hourly_rate=match.hourly_rate,
                    currency=match.currency,
                    rate_type=rate_type,
                    resolved_scope=match.scope,
                    resolved_scope_id=match.scope_id,
                    rate_id=match.id,
                )

        raise RateNotFoundError(project.id, rate_type, at_ts, for_user_id)

    async def _get_project(self, project_id: UUID) -> Project:
        project = self._projects.get(project_id)
        if project is None:
            project = await self.session.get(Project, project_id)
            if project is None:
                raise NotFoundError(f"Project {project_id} not found", project_id=project_id)
            self._projects[project_id] = project
        return project

    async def _rows_for(
        self,
        organization_id: UUID,
        scope: RateScope,
        scope_id: UUID | None,
        rate_type: RateType,
    ) -> tuple[RateRow, ...]:
        key = (organization_id, scope, scope_id, rate_type)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        query = select(Rate).where(
            Rate.organization_id == organization_id,
            Rate.scope == scope.value,
            Rate.rate_type == rate_type.value,
        )
        if scope_id is None:
            query = query.where(Rate.scope_id.is_(None))
        else:
            query = query.where(Rate.scope_id == scope_id)

        result = await self.session.execute(query)
        rows = tuple(RateRow.from_model(rate) for rate in result.scalars().all())
        self.cache.put(key, rows)
        return rows
