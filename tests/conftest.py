"""Pytest fixtures for billing engine tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from billing_engine.calculators.rate_resolver import default_rate_cache
from billing_engine.config import Settings
from billing_engine.events import DomainEvent, EventEmitter
from billing_engine.models import Base, Client, Member, Project, Rate, TimeEntry
from billing_engine.services import FINANCE_READ, FINANCE_WRITE, Actor

# In-memory SQLite shared by every connection of one engine
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

T0 = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock injected into services."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class EventRecorder:
    """Collects every event published on an emitter."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    def __call__(self, event: DomainEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: type) -> list[DomainEvent]:
        return [e for e in self.events if isinstance(e, event_type)]


@pytest.fixture(autouse=True)
def clear_rate_cache():
    """Rate rows are cached per process; tests must not see each other's rates."""
    default_rate_cache.clear()
    yield
    default_rate_cache.clear()


@pytest_asyncio.fixture
async def engine():
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session(engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url=TEST_DATABASE_URL,
        host="127.0.0.1",
        port=8000,
        debug=True,
        log_level="DEBUG",
        idle_threshold_seconds=600,
        idle_min_trim_seconds=60,
        financials_max_age_seconds=300,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def emitter() -> EventEmitter:
    return EventEmitter()


@pytest.fixture
def recorder(emitter: EventEmitter) -> EventRecorder:
    recorder = EventRecorder()
    emitter.on_all(recorder)
    return recorder


# =============================================================================
# Directory Fixtures
# =============================================================================


@pytest.fixture
def organization_id() -> UUID:
    return uuid4()


@pytest.fixture
def freelancer_id() -> UUID:
    return uuid4()


@pytest.fixture
def manager_id() -> UUID:
    return uuid4()


@pytest.fixture
def freelancer(organization_id: UUID, freelancer_id: UUID) -> Actor:
    """A tracking user without finance permissions."""
    return Actor(organization_id=organization_id, user_id=freelancer_id)


@pytest.fixture
def finance_manager(organization_id: UUID, manager_id: UUID) -> Actor:
    return Actor(
        organization_id=organization_id,
        user_id=manager_id,
        permissions=frozenset({FINANCE_READ, FINANCE_WRITE}),
    )


@pytest_asyncio.fixture
async def billing_client(session: AsyncSession, organization_id: UUID) -> Client:
    """Create a test client."""
    client = Client(
        id=uuid4(),
        organization_id=organization_id,
        name="Acme Corp",
        email="billing@acme.test",
    )
    session.add(client)
    await session.flush()
    return client


@pytest_asyncio.fixture
async def project(
    session: AsyncSession, organization_id: UUID, billing_client: Client
) -> Project:
    """Create a test project billed in USD."""
    project = Project(
        id=uuid4(),
        organization_id=organization_id,
        client_id=billing_client.id,
        name="Website Relaunch",
        currency="USD",
    )
    session.add(project)
    await session.flush()
    return project


@pytest_asyncio.fixture
async def members(
    session: AsyncSession, organization_id: UUID, freelancer_id: UUID, manager_id: UUID
) -> list[Member]:
    rows = [
        Member(
            user_id=freelancer_id,
            organization_id=organization_id,
            email="dana@freelance.test",
            display_name="Dana",
        ),
        Member(
            user_id=manager_id,
            organization_id=organization_id,
            email="finance@agency.test",
            display_name="Finance",
        ),
    ]
    session.add_all(rows)
    await session.flush()
    return rows


# =============================================================================
# Rate and Entry Factories
# =============================================================================


@pytest.fixture
def make_rate(session: AsyncSession, organization_id: UUID, manager_id: UUID):
    """Insert a rate row directly, bypassing the overlap checks."""

    async def _make(
        scope: str,
        hourly_rate: str,
        rate_type: str = "billable",
        scope_id: UUID | None = None,
        currency: str = "USD",
        effective_from: datetime | None = None,
        effective_to: datetime | None = None,
    ) -> Rate:
        rate = Rate(
            organization_id=organization_id,
            scope=scope,
            scope_id=scope_id,
            rate_type=rate_type,
            currency=currency,
            hourly_rate=Decimal(hourly_rate),
            effective_from=effective_from,
            effective_to=effective_to,
            created_by=manager_id,
        )
        session.add(rate)
        await session.flush()
        return rate

    return _make


@pytest.fixture
def make_entry(session: AsyncSession, organization_id: UUID, freelancer_id: UUID):
    """Insert a stopped time entry of a given length."""

    async def _make(
        project: Project,
        start: datetime,
        hours: float,
        user_id: UUID | None = None,
        billable: bool = True,
        description: str | None = None,
        task_id: UUID | None = None,
    ) -> TimeEntry:
        seconds = int(hours * 3600)
        entry = TimeEntry(
            organization_id=organization_id,
            user_id=user_id or freelancer_id,
            project_id=project.id,
            task_id=task_id,
            description=description,
            start_ts=start,
            end_ts=start + timedelta(seconds=seconds),
            duration_seconds=seconds,
            billable=billable,
            source="manual",
            paused_intervals=[],
            idle_trim_applied_seconds=0,
        )
        session.add(entry)
        await session.flush()
        return entry

    return _make
