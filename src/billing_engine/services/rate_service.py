"""Rate management: creation with window-overlap checks and supersession."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.calculators.rate_resolver import RateCache, default_rate_cache
from billing_engine.calculators.types import RateScope, RateType
from billing_engine.database import acquire_advisory_xact_lock
from billing_engine.errors import ConflictError, NotFoundError, ValidationError
from billing_engine.models import Client, Rate, utcnow
from billing_engine.models.base import ensure_utc
from billing_engine.services.base import (
    Actor,
    Clock,
    get_project_in_org,
    mark_organization_stale,
    normalize_currency,
    parse_positive_amount,
)

logger = logging.getLogger(__name__)


def windows_overlap(
    a_from: datetime | None,
    a_to: datetime | None,
    b_from: datetime | None,
    b_to: datetime | None,
) -> bool:
    """Half-open [from, to) overlap where None is unbounded."""
    a_starts_before_b_ends = b_to is None or a_from is None or a_from < b_to
    b_starts_before_a_ends = a_to is None or b_from is None or b_from < a_to
    return a_starts_before_b_ends and b_starts_before_a_ends


def rate_lock_key(
    organization_id: UUID,
    scope: RateScope,
    scope_id: UUID | None,
    rate_type: RateType,
    currency: str,
) -> str:
    return f"rate:{organization_id}:{scope.value}:{scope_id or '-'}:{rate_type.value}:{currency}"


class RateService:
    """Service for creating, listing and superseding rates."""

    def __init__(
        self,
        session: AsyncSession,
        cache: RateCache | None = None,
        clock: Clock = utcnow,
    ):
        self.session = session
        self.cache = cache if cache is not None else default_rate_cache
        self.clock = clock

    async def get_rate(self, organization_id: UUID, rate_id: UUID) -> Rate:
        rate = await self.session.get(Rate, rate_id)
        if rate is None or rate.organization_id != organization_id:
            raise NotFoundError(f"Rate {rate_id} not found", rate_id=rate_id)
        return rate

    async def list_rates(
        self,
        organization_id: UUID,
        scope: str | None = None,
        scope_id: UUID | None = None,
        rate_type: str | None = None,
    ) -> list[Rate]:
        query = select(Rate).where(Rate.organization_id == organization_id)
        if scope is not None:
            query = query.where(Rate.scope == self._parse_scope(scope).value)
        if scope_id is not None:
            query = query.where(Rate.scope_id == scope_id)
        if rate_type is not None:
            query = query.where(Rate.rate_type == self._parse_type(rate_type).value)
        result = await self.session.execute(
            query.order_by(Rate.scope, Rate.rate_type, Rate.effective_from, Rate.created_at)
        )
        return list(result.scalars().all())

    @staticmethod
    def _parse_scope(scope: str) -> RateScope:
        try:
            return RateScope(scope)
        except ValueError:
            raise ValidationError(f"Unknown rate scope '{scope}'", field="scope") from None

    @staticmethod
    def _parse_type(rate_type: str) -> RateType:
        try:
            return RateType.parse(rate_type)
        except ValueError:
            raise ValidationError(f"Unknown rate type '{rate_type}'", field="rate_type") from None

    async def _check_scope_target(
        self, actor: Actor, scope: RateScope, scope_id: UUID | None
    ) -> None:
        if scope == RateScope.DEFAULT:
            if scope_id is not None:
                raise ValidationError("Default rates cannot have a scope_id", field="scope_id")
            return
        if scope_id is None:
            raise ValidationError(f"scope_id is required for {scope.value} rates", field="scope_id")
        if scope == RateScope.PROJECT:
            await get_project_in_org(self.session, actor.organization_id, scope_id)
        elif scope == RateScope.CLIENT:
            client = await self.session.get(Client, scope_id)
            if client is None or client.organization_id != actor.organization_id:
                raise NotFoundError(f"Client {scope_id} not found", client_id=scope_id)

    async def _find_overlapping(
        self,
        organization_id: UUID,
        scope: RateScope,
        scope_id: UUID | None,
        rate_type: RateType,
        currency: str,
        effective_from: datetime | None,
        effective_to: datetime | None,
        exclude_id: UUID | None = None,
    ) -> Rate | None:
        query = select(Rate).where(
            Rate.organization_id == organization_id,
            Rate.scope == scope.value,
            Rate.rate_type == rate_type.value,
            Rate.currency == currency,
        )
        query = query.where(Rate.scope_id.is_(None) if scope_id is None else Rate.scope_id == scope_id)
        for rate in (await self.session.execute(query)).scalars():
            if rate.id == exclude_id:
                continue
            if windows_overlap(rate.effective_from, rate.effective_to, effective_from, effective_to):
                return rate
        return None

    async def create_rate(
        self,
        actor: Actor,
        scope: str,
        rate_type: str,
        currency: str,
        hourly_rate: Decimal | float | int | str,
        scope_id: UUID | None = None,
        effective_from: datetime | None = None,
        effective_to: datetime | None = None,
    ) -> Rate:
        """Create a rate.

        Raises:
            ValidationError: malformed input
            NotFoundError: the scoped project/client does not exist
            ConflictError: the window overlaps an existing rate of the same key
        """
        parsed_scope = self._parse_scope(scope)
        parsed_type = self._parse_type(rate_type)
        code = normalize_currency(currency)
        amount = parse_positive_amount(hourly_rate, "hourly_rate")
        effective_from = ensure_utc(effective_from) if effective_from else None
        effective_to = ensure_utc(effective_to) if effective_to else None
        if effective_from and effective_to and effective_to <= effective_from:
            raise ValidationError("effective_to must be after effective_from", field="effective_to")
        await self._check_scope_target(actor, parsed_scope, scope_id)

        # Held until commit so concurrent creators see each other's rows.
        await acquire_advisory_xact_lock(
            self.session,
            rate_lock_key(actor.organization_id, parsed_scope, scope_id, parsed_type, code),
        )

        existing = await self._find_overlapping(
            actor.organization_id,
            parsed_scope,
            scope_id,
            parsed_type,
            code,
            effective_from,
            effective_to,
        )
        if existing is not None:
            raise ConflictError(
                "Rate window overlaps an existing rate; supersede it instead",
                conflicting_rate_id=existing.id,
            )

        now = self.clock()
        rate = Rate(
            organization_id=actor.organization_id,
            scope=parsed_scope.value,
            scope_id=scope_id,
            rate_type=parsed_type.value,
            currency=code,
            hourly_rate=amount,
            effective_from=effective_from,
            effective_to=effective_to,
            created_by=actor.user_id,
            created_at=now,
            updated_at=now,
        )
        self.session.add(rate)
        await self.session.flush()
        await self._after_change(actor.organization_id, parsed_scope, scope_id, parsed_type)
        logger.info(
            "Created %s %s rate %s %s for %s",
            parsed_scope.value,
            parsed_type.value,
            amount,
            code,
            scope_id or actor.organization_id,
        )
        return rate

    async def supersede_rate(
        self,
        actor: Actor,
        rate_id: UUID,
        hourly_rate: Decimal | float | int | str,
        effective_from: datetime,
    ) -> Rate:
        """Close ``rate_id`` at ``effective_from`` and open its successor there.

        The successor inherits the predecessor's ``effective_to``.
        """
        previous = await self.get_rate(actor.organization_id, rate_id)
        await acquire_advisory_xact_lock(
            self.session,
            rate_lock_key(
                previous.organization_id,
                RateScope(previous.scope),
                previous.scope_id,
                RateType(previous.rate_type),
                previous.currency,
            ),
        )
        await self.session.refresh(previous)
        amount = parse_positive_amount(hourly_rate, "hourly_rate")
        effective_from = ensure_utc(effective_from)

        if previous.effective_from is not None and effective_from <= previous.effective_from:
            raise ValidationError(
                "Successor must start after the superseded rate starts", field="effective_from"
            )
        if previous.effective_to is not None and effective_from >= previous.effective_to:
            raise ValidationError(
                "Successor must start before the superseded rate ends", field="effective_from"
            )

        now = self.clock()
        successor = Rate(
            organization_id=previous.organization_id,
            scope=previous.scope,
            scope_id=previous.scope_id,
            rate_type=previous.rate_type,
            currency=previous.currency,
            hourly_rate=amount,
            effective_from=effective_from,
            effective_to=previous.effective_to,
            created_by=actor.user_id,
            created_at=now,
            updated_at=now,
        )
        previous.effective_to = effective_from
        self.session.add(successor)
        await self.session.flush()
        await self._after_change(
            previous.organization_id,
            RateScope(previous.scope),
            previous.scope_id,
            RateType(previous.rate_type),
        )
        logger.info("Rate %s superseded by %s from %s", previous.id, successor.id, effective_from)
        return successor

    async def _after_change(
        self,
        organization_id: UUID,
        scope: RateScope,
        scope_id: UUID | None,
        rate_type: RateType,
    ) -> None:
        self.cache.invalidate(organization_id, scope, scope_id, rate_type)
        await mark_organization_stale(self.session, organization_id)
