"""Integration test fixtures: the FastAPI app over an in-memory database."""

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.api.app import create_app
from billing_engine.api.dependencies import get_db_session, get_delivery_provider
from billing_engine.config import get_settings
from billing_engine.models import Client, Member, Project, Rate, TimeEntry
from billing_engine.providers import LoggingDeliveryProvider

# Fixed identities for the seeded organization
ORGANIZATION_ID = UUID("00000000-0000-0000-0000-00000000a001")
FREELANCER_ID = UUID("00000000-0000-0000-0000-00000000b001")
MANAGER_ID = UUID("00000000-0000-0000-0000-00000000b002")
PROJECT_ID = UUID("00000000-0000-0000-0000-00000000c001")

WORK_DAY = datetime(2024, 2, 5, 9, 0, tzinfo=timezone.utc)


def freelancer_headers() -> dict[str, str]:
    return {
        "X-Organization-ID": str(ORGANIZATION_ID),
        "X-User-ID": str(FREELANCER_ID),
    }


def finance_headers() -> dict[str, str]:
    return {
        "X-Organization-ID": str(ORGANIZATION_ID),
        "X-User-ID": str(MANAGER_ID),
        "X-Permissions": "finance:read,finance:write",
    }


@pytest_asyncio.fixture
async def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def delivery() -> LoggingDeliveryProvider:
    """Delivery provider shared by every request of a test."""
    return LoggingDeliveryProvider()


@pytest_asyncio.fixture
async def client(session_factory, settings, delivery) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to an app whose sessions use the test engine."""
    app = create_app()

    async def override_db_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db_session] = override_db_session
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_delivery_provider] = lambda: delivery

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def seeded_db(session_factory) -> dict[str, Any]:
    """Seed an organization with a client, a project, rates and tracked work.

    Five billable hours on 2024-02-05 at $60, cost $30/h for the freelancer.
    """
    async with session_factory() as session:
        billing_client = Client(
            id=uuid4(),
            organization_id=ORGANIZATION_ID,
            name="Acme Corp",
            email="billing@acme.test",
        )
        project = Project(
            id=PROJECT_ID,
            organization_id=ORGANIZATION_ID,
            client_id=billing_client.id,
            name="Website Relaunch",
            currency="USD",
        )
        session.add_all(
            [
                billing_client,
                project,
                Member(
                    user_id=FREELANCER_ID,
                    organization_id=ORGANIZATION_ID,
                    email="dana@freelance.test",
                    display_name="Dana",
                ),
                Rate(
                    organization_id=ORGANIZATION_ID,
                    scope="project",
                    scope_id=PROJECT_ID,
                    rate_type="billable",
                    currency="USD",
                    hourly_rate=Decimal("60"),
                    created_by=MANAGER_ID,
                ),
                Rate(
                    organization_id=ORGANIZATION_ID,
                    scope="user",
                    scope_id=FREELANCER_ID,
                    rate_type="cost",
                    currency="USD",
                    hourly_rate=Decimal("30"),
                    created_by=MANAGER_ID,
                ),
            ]
        )
        for day, hours in ((0, 3), (1, 2)):
            start = WORK_DAY + timedelta(days=day)
            seconds = hours * 3600
            session.add(
                TimeEntry(
                    organization_id=ORGANIZATION_ID,
                    user_id=FREELANCER_ID,
                    project_id=PROJECT_ID,
                    start_ts=start,
                    end_ts=start + timedelta(seconds=seconds),
                    duration_seconds=seconds,
                    billable=True,
                    source="manual",
                    paused_intervals=[],
                    idle_trim_applied_seconds=0,
                )
            )
        await session.commit()

    return {"organization_id": ORGANIZATION_ID, "project_id": PROJECT_ID}
