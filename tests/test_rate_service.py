"""Tests for rate management."""

from datetime import datetime, timezone
from types import SimpleNamespace
from decimal import Decimal
from uuid import uuid4

import pytest

from billing_engine.calculators.rate_resolver import RateResolver
from billing_engine.calculators.types import RateScope, RateType
from billing_engine.database import acquire_advisory_xact_lock
from billing_engine.errors import ConflictError, NotFoundError, ValidationError
from billing_engine.models import ProjectFinancials
from billing_engine.services import FinancialsService, RateService
from billing_engine.services import rate_service
from billing_engine.services.rate_service import rate_lock_key, windows_overlap

JAN_1 = datetime(2024, 1, 1, tzinfo=timezone.utc)
FEB_1 = datetime(2024, 2, 1, tzinfo=timezone.utc)
FEB_15 = datetime(2024, 2, 15, tzinfo=timezone.utc)
MAR_1 = datetime(2024, 3, 1, tzinfo=timezone.utc)


@pytest.fixture
def rates(session, clock):
    return RateService(session, clock=clock)


class TestWindowOverlap:
    """Test half-open window overlap with open bounds."""

    def test_adjacent_windows_do_not_overlap(self):
        assert windows_overlap(JAN_1, MAR_1, MAR_1, None) is False

    def test_unbounded_overlaps_everything(self):
        assert windows_overlap(None, None, FEB_1, MAR_1) is True
        assert windows_overlap(JAN_1, None, None, FEB_1) is True

    def test_disjoint(self):
        assert windows_overlap(JAN_1, FEB_1, FEB_15, MAR_1) is False


class TestRateService:
    """Test rate creation, overlap checks and supersession."""

    @pytest.mark.asyncio
    async def test_create_rate(self, rates, finance_manager, project):
        rate = await rates.create_rate(
            finance_manager,
            scope="project",
            rate_type="billable",
            currency="usd",
            hourly_rate="60",
            scope_id=project.id,
            effective_from=JAN_1,
        )

        assert rate.currency == "USD"
        assert rate.hourly_rate == Decimal("60")
        assert rate.created_by == finance_manager.user_id

    @pytest.mark.asyncio
    async def test_overlapping_window_conflicts(self, rates, finance_manager, project):
        """Two windows of the same key may not overlap."""
        first = await rates.create_rate(
            finance_manager, "project", "billable", "USD", "60", scope_id=project.id, effective_from=JAN_1
        )

        with pytest.raises(ConflictError) as exc_info:
            await rates.create_rate(
                finance_manager,
                "project",
                "billable",
                "USD",
                "70",
                scope_id=project.id,
                effective_from=FEB_1,
                effective_to=MAR_1,
            )

        assert exc_info.value.context["conflicting_rate_id"] == first.id

    @pytest.mark.asyncio
    async def test_other_currency_or_type_does_not_conflict(self, rates, finance_manager, project):
        await rates.create_rate(finance_manager, "project", "billable", "USD", "60", scope_id=project.id)
        await rates.create_rate(finance_manager, "project", "billable", "EUR", "55", scope_id=project.id)
        await rates.create_rate(finance_manager, "project", "cost", "USD", "30", scope_id=project.id)

        listed = await rates.list_rates(finance_manager.organization_id, scope="project")

        assert len(listed) == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"scope": "team", "rate_type": "billable", "currency": "USD", "hourly_rate": "10"},
            {"scope": "default", "rate_type": "markup", "currency": "USD", "hourly_rate": "10"},
            {"scope": "default", "rate_type": "billable", "currency": "dollars", "hourly_rate": "10"},
            {"scope": "default", "rate_type": "billable", "currency": "USD", "hourly_rate": "0"},
            {"scope": "project", "rate_type": "billable", "currency": "USD", "hourly_rate": "10"},
        ],
    )
    async def test_validation(self, rates, finance_manager, kwargs):
        with pytest.raises(ValidationError):
            await rates.create_rate(finance_manager, **kwargs)

    @pytest.mark.asyncio
    async def test_scope_target_must_exist(self, rates, finance_manager):
        with pytest.raises(NotFoundError):
            await rates.create_rate(finance_manager, "client", "billable", "USD", "50", scope_id=uuid4())

    @pytest.mark.asyncio
    async def test_supersede(self, rates, session, finance_manager, project):
        """The predecessor closes where the successor opens."""
        original = await rates.create_rate(
            finance_manager, "project", "billable", "USD", "50", scope_id=project.id, effective_from=JAN_1
        )

        successor = await rates.supersede_rate(finance_manager, original.id, "65", MAR_1)

        assert original.effective_to == MAR_1
        assert successor.effective_from == MAR_1
        assert successor.effective_to is None
        assert successor.hourly_rate == Decimal("65")

        resolver = RateResolver(session)
        assert (await resolver.resolve(project.id, RateType.BILLABLE, at_ts=FEB_15)).hourly_rate == Decimal("50")
        assert (await resolver.resolve(project.id, RateType.BILLABLE, at_ts=MAR_1)).hourly_rate == Decimal("65")

    @pytest.mark.asyncio
    async def test_supersede_must_start_inside_window(self, rates, finance_manager, project):
        original = await rates.create_rate(
            finance_manager, "project", "billable", "USD", "50", scope_id=project.id, effective_from=FEB_1
        )

        with pytest.raises(ValidationError):
            await rates.supersede_rate(finance_manager, original.id, "65", JAN_1)

    @pytest.mark.asyncio
    async def test_rate_change_marks_financials_stale(
        self, rates, session, settings, clock, finance_manager, project
    ):
        await FinancialsService(session, settings=settings, clock=clock).recompute(project.id)

        await rates.create_rate(finance_manager, "default", "billable", "USD", "40")

        snapshot = await session.get(ProjectFinancials, project.id, populate_existing=True)
        assert snapshot.is_stale is True


class FakeSession:
    """Stands in for an AsyncSession bound to a given dialect."""

    def __init__(self, dialect_name):
        self.dialect_name = dialect_name
        self.statements = []

    async def connection(self):
        return SimpleNamespace(dialect=SimpleNamespace(name=self.dialect_name))

    async def execute(self, statement, params=None):
        self.statements.append((str(statement), params))


class TestRateLocking:
    """Writers on one rate key are serialized before the overlap check."""

    @pytest.mark.asyncio
    async def test_postgres_takes_transaction_lock(self):
        session = FakeSession("postgresql")

        await acquire_advisory_xact_lock(session, "rate:abc")

        assert session.statements == [
            ("SELECT pg_advisory_xact_lock(hashtext(:key))", {"key": "rate:abc"})
        ]

    @pytest.mark.asyncio
    async def test_sqlite_needs_no_lock(self):
        session = FakeSession("sqlite")

        await acquire_advisory_xact_lock(session, "rate:abc")

        assert session.statements == []

    @pytest.mark.asyncio
    async def test_create_locks_rate_key_before_overlap_check(
        self, rates, finance_manager, project, monkeypatch
    ):
        calls = []
        find_overlapping = rates._find_overlapping

        async def record_lock(session, key):
            calls.append(("lock", key))

        async def record_find(*args, **kwargs):
            calls.append(("find", None))
            return await find_overlapping(*args, **kwargs)

        monkeypatch.setattr(rate_service, "acquire_advisory_xact_lock", record_lock)
        monkeypatch.setattr(rates, "_find_overlapping", record_find)

        await rates.create_rate(finance_manager, "project", "billable", "usd", "60", scope_id=project.id)

        expected = rate_lock_key(
            finance_manager.organization_id, RateScope.PROJECT, project.id, RateType.BILLABLE, "USD"
        )
        assert calls == [("lock", expected), ("find", None)]

    @pytest.mark.asyncio
    async def test_supersede_locks_same_key(self, rates, finance_manager, monkeypatch):
        original = await rates.create_rate(finance_manager, "default", "cost", "USD", "30", effective_from=JAN_1)
        keys = []

        async def record_lock(session, key):
            keys.append(key)

        monkeypatch.setattr(rate_service, "acquire_advisory_xact_lock", record_lock)

        await rates.supersede_rate(finance_manager, original.id, "35", MAR_1)

        assert keys == [
            rate_lock_key(finance_manager.organization_id, RateScope.DEFAULT, None, RateType.COST, "USD")
        ]
