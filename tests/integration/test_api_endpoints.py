"""API endpoint integration tests.

Tests the FastAPI endpoints for timers, financials, invoices and payouts.
"""

import csv
import io
from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from billing_engine.api.app import create_app
from billing_engine.api.dependencies import get_db_session
from billing_engine.config import get_settings

from tests.integration.conftest import (
    FREELANCER_ID,
    PROJECT_ID,
    finance_headers,
    freelancer_headers,
)


pytestmark = pytest.mark.asyncio


class TestHealthEndpoints:
    """Test health check endpoints."""

    async def test_health_check(self, client: AsyncClient):
        """Health endpoint should report a reachable database."""
        response = await client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"] == {"database": "healthy", "schema": "healthy"}
        assert data["missing_tables"] == []
        assert "timestamp" in data

    async def test_readiness_check(self, client: AsyncClient):
        response = await client.get("/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    async def test_liveness_check(self, client: AsyncClient):
        response = await client.get("/live")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    async def test_missing_schema_is_not_ready(self, settings):
        """A reachable database without the billing tables is degraded."""
        bare = create_async_engine(
            "sqlite+aiosqlite:///:memory:",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        factory = async_sessionmaker(bare, class_=AsyncSession, expire_on_commit=False)

        async def bare_session() -> AsyncGenerator[AsyncSession, None]:
            async with factory() as session:
                yield session

        app = create_app()
        app.dependency_overrides[get_db_session] = bare_session
        app.dependency_overrides[get_settings] = lambda: settings
        try:
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
                health = await ac.get("/health")
                ready = await ac.get("/ready")
        finally:
            await bare.dispose()

        assert health.status_code == 200
        assert health.json()["status"] == "degraded"
        assert health.json()["checks"] == {"database": "healthy", "schema": "unhealthy"}
        assert "invoice" in health.json()["missing_tables"]
        assert ready.status_code == 503
        assert ready.json() == {"status": "not_ready"}


class TestTimerEndpoints:
    """Test the timer flow over HTTP."""

    async def test_start_and_stop(self, client: AsyncClient, seeded_db):
        """Start, read back as active, then stop."""
        response = await client.post(
            "/api/v1/time/timers/start",
            headers=freelancer_headers(),
            json={"project_id": str(PROJECT_ID), "notes": "Landing page"},
        )
        assert response.status_code == 201, response.text
        started = response.json()
        assert started["end_ts"] is None
        assert started["user_id"] == str(FREELANCER_ID)
        assert started["project"]["name"] == "Website Relaunch"

        active = await client.get("/api/v1/time/timers/active", headers=freelancer_headers())
        assert active.status_code == 200
        assert active.json()["id"] == started["id"]

        stopped = await client.post(
            "/api/v1/time/timers/stop",
            headers=freelancer_headers(),
            json={"time_entry_id": started["id"]},
        )
        assert stopped.status_code == 200, stopped.text
        assert stopped.json()["end_ts"] is not None
        assert stopped.json()["duration_seconds"] >= 0

    async def test_second_start_conflicts(self, client: AsyncClient, seeded_db):
        body = {"project_id": str(PROJECT_ID)}
        first = await client.post("/api/v1/time/timers/start", headers=freelancer_headers(), json=body)
        assert first.status_code == 201

        second = await client.post("/api/v1/time/timers/start", headers=freelancer_headers(), json=body)

        assert second.status_code == 409
        assert second.json()["code"] == "CONFLICT"
        assert second.json()["time_entry_id"] == first.json()["id"]

    async def test_no_active_timer(self, client: AsyncClient, seeded_db):
        """No open timer is a 404 with the error envelope."""
        response = await client.get("/api/v1/time/timers/active", headers=freelancer_headers())

        assert response.status_code == 404
        assert response.json() == {"detail": "No active timer", "code": "NOT_FOUND"}

    async def test_identity_headers_required(self, client: AsyncClient):
        response = await client.get("/api/v1/time/timers/active")

        assert response.status_code == 422
        assert "X-Organization-ID" in response.json()["detail"]


class TestFinanceEndpoints:
    """Test financials, invoices and payouts over HTTP."""

    async def test_financials_require_permission(self, client: AsyncClient, seeded_db):
        response = await client.get(
            f"/api/v1/projects/{PROJECT_ID}/financials", headers=freelancer_headers()
        )

        assert response.status_code == 403
        assert response.json()["code"] == "FORBIDDEN"

    async def test_get_financials(self, client: AsyncClient, seeded_db):
        response = await client.get(
            f"/api/v1/projects/{PROJECT_ID}/financials", headers=finance_headers()
        )

        assert response.status_code == 200, response.text
        data = response.json()
        assert data["revenue"] == 300.0
        assert data["freelancer_cost"] == 150.0
        assert data["profit"] == 150.0
        assert data["margin_percent"] == 50.0
        assert data["currency"] == "USD"

    async def test_draft_and_send_invoice(self, client: AsyncClient, seeded_db, delivery):
        draft = await client.post(
            f"/api/v1/projects/{PROJECT_ID}/invoices/draft",
            headers=finance_headers(),
            json={"note": "February work"},
        )
        assert draft.status_code == 201, draft.text
        invoice = draft.json()
        assert invoice["status"] == "draft"
        assert invoice["total"] == 300.0
        assert invoice["number"].startswith("INV-")

        sent = await client.post(
            f"/api/v1/finance/invoices/{invoice['id']}/send", headers=finance_headers()
        )
        assert sent.status_code == 200, sent.text
        assert sent.json() == {"status": "sent"}
        assert delivery.sent == [(invoice["number"], "billing@acme.test")]

        again = await client.post(
            f"/api/v1/projects/{PROJECT_ID}/invoices/draft",
            headers=finance_headers(),
            json={},
        )
        assert again.status_code == 422

    async def test_payout_export(self, client: AsyncClient, seeded_db):
        created = await client.post(
            "/api/v1/finance/payouts",
            headers=finance_headers(),
            json={
                "freelancer_user_id": str(FREELANCER_ID),
                "amount": "120.5",
                "currency": "USD",
                "payout_method": "bank_transfer",
            },
        )
        assert created.status_code == 201, created.text
        assert created.json()["status"] == "pending"

        export = await client.get("/api/v1/finance/payouts/export", headers=finance_headers())

        assert export.status_code == 200
        assert export.headers["content-type"].startswith("text/csv")
        rows = list(csv.DictReader(io.StringIO(export.text)))
        assert len(rows) == 1
        assert rows[0]["freelancer_email"] == "dana@freelance.test"
        assert rows[0]["amount"] == "120.50"

    async def test_unsupported_export_format(self, client: AsyncClient, seeded_db):
        response = await client.get(
            "/api/v1/finance/payouts/export",
            headers=finance_headers(),
            params={"format": "xlsx"},
        )

        assert response.status_code == 422
        assert response.json()["field"] == "format"

    async def test_other_organization_sees_nothing(self, client: AsyncClient, seeded_db):
        headers = finance_headers()
        headers["X-Organization-ID"] = "00000000-0000-0000-0000-00000000a999"

        response = await client.get(f"/api/v1/projects/{PROJECT_ID}/financials", headers=headers)

        assert response.status_code == 404
