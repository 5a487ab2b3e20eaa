"""Tests for hourly rate resolver."""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from billing_engine.calculators.rate_resolver import RateCache, RateNotFoundError, RateResolver
from billing_engine.calculators.types import RateScope, RateType
from billing_engine.errors import NotFoundError

JAN_1 = datetime(2024, 1, 1, tzinfo=timezone.utc)
FEB_15 = datetime(2024, 2, 15, tzinfo=timezone.utc)
MAR_1 = datetime(2024, 3, 1, tzinfo=timezone.utc)
MAR_2 = datetime(2024, 3, 2, tzinfo=timezone.utc)


@pytest.fixture
def resolver(session):
    return RateResolver(session, cache=RateCache(ttl_seconds=0))


class TestRateResolver:
    """Test rate resolution over the scope cascade."""

    @pytest.mark.asyncio
    async def test_resolve_default_rate(self, resolver, project, make_rate):
        """Test resolving the organization default when nothing more specific exists."""
        await make_rate("default", "40")

        rate = await resolver.resolve(project.id, RateType.BILLABLE, at_ts=FEB_15)

        assert rate.hourly_rate == Decimal("40")
        assert rate.resolved_scope == RateScope.DEFAULT
        assert rate.resolved_scope_id is None
        assert rate.source == "organization default rate"

    @pytest.mark.asyncio
    async def test_scope_priority(self, resolver, project, billing_client, freelancer_id, make_rate):
        """User beats project beats client beats default."""
        await make_rate("default", "40")
        await make_rate("client", "50", scope_id=billing_client.id)
        await make_rate("project", "60", scope_id=project.id)
        await make_rate("user", "75", scope_id=freelancer_id)

        user_rate = await resolver.resolve(project.id, "billable", for_user_id=freelancer_id, at_ts=FEB_15)
        other_rate = await resolver.resolve(project.id, "billable", for_user_id=uuid4(), at_ts=FEB_15)

        assert user_rate.hourly_rate == Decimal("75")
        assert user_rate.resolved_scope == RateScope.USER
        assert other_rate.hourly_rate == Decimal("60")
        assert other_rate.resolved_scope == RateScope.PROJECT

    @pytest.mark.asyncio
    async def test_client_rate_via_project(self, resolver, project, billing_client, make_rate):
        await make_rate("default", "40")
        await make_rate("client", "50", scope_id=billing_client.id)

        rate = await resolver.resolve(project.id, RateType.BILLABLE, at_ts=FEB_15)

        assert rate.resolved_scope == RateScope.CLIENT
        assert rate.resolved_scope_id == billing_client.id

    @pytest.mark.asyncio
    async def test_resolve_rate_respects_effective_dates(self, resolver, project, make_rate):
        """[Jan 1, Mar 1) and [Mar 1, ∞) pick by instant; the end bound is exclusive."""
        await make_rate("project", "50", scope_id=project.id, effective_from=JAN_1, effective_to=MAR_1)
        await make_rate("project", "65", scope_id=project.id, effective_from=MAR_1)

        february = await resolver.resolve(project.id, RateType.BILLABLE, at_ts=FEB_15)
        march = await resolver.resolve(project.id, RateType.BILLABLE, at_ts=MAR_2)
        boundary = await resolver.resolve(project.id, RateType.BILLABLE, at_ts=MAR_1)

        assert february.hourly_rate == Decimal("50")
        assert march.hourly_rate == Decimal("65")
        assert boundary.hourly_rate == Decimal("65")

    @pytest.mark.asyncio
    async def test_expired_scope_falls_through(self, resolver, project, make_rate):
        """A project rate outside its window does not shadow the default."""
        await make_rate("default", "40")
        await make_rate("project", "60", scope_id=project.id, effective_from=MAR_1)

        rate = await resolver.resolve(project.id, RateType.BILLABLE, at_ts=FEB_15)

        assert rate.resolved_scope == RateScope.DEFAULT

    @pytest.mark.asyncio
    async def test_rate_type_and_currency_filter(self, resolver, project, make_rate):
        await make_rate("default", "40")
        await make_rate("default", "25", rate_type="cost")
        await make_rate("default", "37", currency="EUR")

        cost = await resolver.resolve(project.id, "internal", at_ts=FEB_15)
        euro = await resolver.resolve(project.id, RateType.BILLABLE, at_ts=FEB_15, currency="EUR")

        assert cost.hourly_rate == Decimal("25")
        assert cost.rate_type == RateType.COST
        assert euro.hourly_rate == Decimal("37")

    @pytest.mark.asyncio
    async def test_resolve_rate_not_found(self, resolver, project, freelancer_id):
        """Test error when no scope has a rate."""
        with pytest.raises(RateNotFoundError) as exc_info:
            await resolver.resolve(project.id, RateType.BILLABLE, for_user_id=freelancer_id, at_ts=FEB_15)

        assert exc_info.value.project_id == project.id
        assert exc_info.value.user_id == freelancer_id
        assert exc_info.value.code == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_unknown_project(self, resolver):
        with pytest.raises(NotFoundError):
            await resolver.resolve(uuid4(), RateType.BILLABLE, at_ts=FEB_15)


class TestRateCache:
    """Test the short-TTL rate cache."""

    def test_entries_expire(self):
        now = [0.0]
        cache = RateCache(ttl_seconds=30, clock=lambda: now[0])
        key = (uuid4(), RateScope.DEFAULT, None, RateType.BILLABLE)

        cache.put(key, [])
        assert cache.get(key) == ()

        now[0] = 31.0
        assert cache.get(key) is None

    def test_invalidate(self):
        cache = RateCache(ttl_seconds=30)
        organization_id = uuid4()
        key = (organization_id, RateScope.DEFAULT, None, RateType.COST)

        cache.put(key, [])
        cache.invalidate(organization_id, RateScope.DEFAULT, None, RateType.COST)

        assert cache.get(key) is None

    def test_zero_ttl_disables_caching(self):
        cache = RateCache(ttl_seconds=0)
        key = (uuid4(), RateScope.DEFAULT, None, RateType.BILLABLE)

        cache.put(key, [])

        assert cache.get(key) is None
