"""Tests for the payout ledger and freelancer reconciliation."""

import csv
import io
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from billing_engine.errors import CurrencyMismatchError, InvalidStateError, NotFoundError, ValidationError
from billing_engine.events import PayoutCompleted, PayoutCreated, PayoutFailed
from billing_engine.services import AlertService, PayoutService

from tests.conftest import T0

FEB_5 = datetime(2024, 2, 5, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def payouts(session, settings, clock, emitter):
    return PayoutService(session, settings=settings, clock=clock, emitter=emitter)


class TestPayoutLifecycle:
    """Test pending → completed | failed."""

    @pytest.mark.asyncio
    async def test_create_payout(self, payouts, finance_manager, freelancer_id, project, recorder):
        payout = await payouts.create_payout(
            finance_manager,
            freelancer_user_id=freelancer_id,
            amount="250",
            currency="usd",
            payout_method="bank_transfer",
            project_id=project.id,
            metadata={"batch": "2024-03"},
        )

        assert payout.status == "pending"
        assert payout.amount == Decimal("250")
        assert payout.currency == "USD"
        assert payout.payout_metadata == {"batch": "2024-03"}
        assert recorder.of_type(PayoutCreated)[0].payout_id == payout.id

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "amount,currency,method",
        [("0", "USD", "wire"), ("-5", "USD", "wire"), ("10", "US", "wire"), ("10", "USD", "  ")],
    )
    async def test_create_validation(self, payouts, finance_manager, freelancer_id, amount, currency, method):
        with pytest.raises(ValidationError):
            await payouts.create_payout(finance_manager, freelancer_id, amount, currency, method)

    @pytest.mark.asyncio
    async def test_unknown_project(self, payouts, finance_manager, freelancer_id):
        with pytest.raises(NotFoundError):
            await payouts.create_payout(finance_manager, freelancer_id, "10", "USD", "wire", project_id=uuid4())

    @pytest.mark.asyncio
    async def test_mark_completed_once(self, payouts, finance_manager, freelancer_id, recorder):
        """A second completion is rejected and the first reference is kept."""
        payout = await payouts.create_payout(finance_manager, freelancer_id, "100", "USD", "wire")

        await payouts.mark_completed(finance_manager, payout.id, "WIRE-001")

        with pytest.raises(InvalidStateError) as exc_info:
            await payouts.mark_completed(finance_manager, payout.id, "WIRE-002")

        assert exc_info.value.current_state == "completed"
        assert payout.status == "completed"
        assert payout.payout_reference == "WIRE-001"
        assert payout.paid_at == T0
        assert len(recorder.of_type(PayoutCompleted)) == 1

    @pytest.mark.asyncio
    async def test_completion_requires_reference(self, payouts, finance_manager, freelancer_id):
        payout = await payouts.create_payout(finance_manager, freelancer_id, "100", "USD", "wire")

        with pytest.raises(ValidationError):
            await payouts.mark_completed(finance_manager, payout.id, " ")

        assert payout.status == "pending"

    @pytest.mark.asyncio
    async def test_mark_failed_is_terminal(self, payouts, finance_manager, freelancer_id, recorder):
        payout = await payouts.create_payout(finance_manager, freelancer_id, "100", "USD", "wire")

        await payouts.mark_failed(finance_manager, payout.id, "Account closed")

        assert payout.status == "failed"
        assert payout.failure_reason == "Account closed"
        assert recorder.of_type(PayoutFailed)[0].failure_reason == "Account closed"
        with pytest.raises(InvalidStateError):
            await payouts.mark_completed(finance_manager, payout.id, "WIRE-003")

    @pytest.mark.asyncio
    async def test_other_organization(self, payouts, finance_manager, freelancer_id):
        payout = await payouts.create_payout(finance_manager, freelancer_id, "100", "USD", "wire")

        with pytest.raises(NotFoundError):
            await payouts.get_payout(uuid4(), payout.id)


class TestPayoutQueries:
    """Test listing and CSV export."""

    @pytest.mark.asyncio
    async def test_list_by_email(self, payouts, finance_manager, freelancer_id, manager_id, members, organization_id, clock):
        mine = await payouts.create_payout(finance_manager, freelancer_id, "100", "USD", "wire")
        clock.advance(hours=1)
        await payouts.create_payout(finance_manager, manager_id, "40", "USD", "wire")

        by_email = await payouts.list_payouts(organization_id, freelancer_email="DANA@freelance.test")
        unknown = await payouts.list_payouts(organization_id, freelancer_email="nobody@freelance.test")
        everyone = await payouts.list_payouts(organization_id)

        assert [p.id for p in by_email] == [mine.id]
        assert unknown == []
        # newest first
        assert [p.freelancer_user_id for p in everyone] == [manager_id, freelancer_id]

    @pytest.mark.asyncio
    async def test_list_from(self, payouts, finance_manager, freelancer_id, organization_id, clock):
        await payouts.create_payout(finance_manager, freelancer_id, "100", "USD", "wire")
        later = clock.advance(days=1)
        recent = await payouts.create_payout(finance_manager, freelancer_id, "50", "USD", "wire")

        listed = await payouts.list_payouts(organization_id, created_from=later)

        assert [p.id for p in listed] == [recent.id]

    @pytest.mark.asyncio
    async def test_export_csv(self, payouts, finance_manager, freelancer_id, members, organization_id, clock):
        first = await payouts.create_payout(finance_manager, freelancer_id, "100", "USD", "wire")
        await payouts.mark_completed(finance_manager, first.id, "WIRE-001")
        clock.advance(hours=1)
        await payouts.create_payout(finance_manager, freelancer_id, "40.5", "USD", "paypal")

        content = await payouts.export_payouts_csv(organization_id)
        rows = list(csv.DictReader(io.StringIO(content)))

        assert content.splitlines()[0].split(",")[:5] == [
            "id",
            "freelancer_user_id",
            "freelancer_email",
            "project_id",
            "amount",
        ]
        # oldest first
        assert [r["amount"] for r in rows] == ["100.00", "40.50"]
        assert rows[0]["status"] == "completed"
        assert rows[0]["payout_reference"] == "WIRE-001"
        assert rows[0]["freelancer_email"] == "dana@freelance.test"
        assert rows[1]["paid_at"] == ""

    @pytest.mark.asyncio
    async def test_export_empty(self, payouts, organization_id):
        content = await payouts.export_payouts_csv(organization_id)
        assert content.strip().startswith("id,freelancer_user_id")
        assert len(content.splitlines()) == 1


class TestFreelancerSummary:
    """Test reconciliation of tracked cost against payouts."""

    @pytest.mark.asyncio
    async def test_amount_due(
        self, payouts, finance_manager, freelancer_id, organization_id, project, make_rate, make_entry
    ):
        await make_rate("user", "30", rate_type="cost", scope_id=freelancer_id)
        await make_entry(project, FEB_5, 10)
        paid = await payouts.create_payout(finance_manager, freelancer_id, "200", "USD", "wire")
        await payouts.mark_completed(finance_manager, paid.id, "WIRE-001")
        await payouts.create_payout(finance_manager, freelancer_id, "50", "USD", "wire")
        failed = await payouts.create_payout(finance_manager, freelancer_id, "999", "USD", "wire")
        await payouts.mark_failed(finance_manager, failed.id, "Rejected by bank")

        summary = await payouts.freelancer_finance_summary(organization_id, freelancer_id)

        assert summary.total_hours == Decimal("10.0000")
        assert summary.total_cost == Decimal("300.00")
        assert summary.paid_total == Decimal("200.00")
        assert summary.pending_payout_total == Decimal("50.00")
        assert summary.due_total == Decimal("50.00")
        assert summary.over_paid is False

    @pytest.mark.asyncio
    async def test_over_paid(
        self, session, payouts, finance_manager, freelancer_id, organization_id, project, make_rate, make_entry, clock
    ):
        """Due never goes negative; the overpayment raises an alert instead."""
        await make_rate("user", "30", rate_type="cost", scope_id=freelancer_id)
        await make_entry(project, FEB_5, 10)
        paid = await payouts.create_payout(finance_manager, freelancer_id, "400", "USD", "wire")
        await payouts.mark_completed(finance_manager, paid.id, "WIRE-001")

        summary = await payouts.freelancer_finance_summary(organization_id, freelancer_id)

        assert summary.due_total == Decimal("0")
        assert summary.over_paid is True
        (alert,) = await AlertService(session, clock=clock).list_alerts(organization_id)
        assert alert.alert_type == "negative_due"
        assert alert.subject_user_id == freelancer_id
        assert alert.current_value == Decimal("-100.00")

    @pytest.mark.asyncio
    async def test_window(
        self, payouts, finance_manager, freelancer_id, organization_id, project, make_rate, make_entry
    ):
        """Entries by start, completed payouts by paid_at, pending by schedule."""
        await make_rate("user", "30", rate_type="cost", scope_id=freelancer_id)
        await make_entry(project, FEB_5, 2)
        await make_entry(project, FEB_5 + timedelta(days=40), 3)
        early = await payouts.create_payout(finance_manager, freelancer_id, "60", "USD", "wire")
        await payouts.mark_completed(
            finance_manager, early.id, "WIRE-001", paid_at=FEB_5 + timedelta(days=3)
        )
        await payouts.create_payout(
            finance_manager,
            freelancer_id,
            "90",
            "USD",
            "wire",
            scheduled_for=FEB_5 + timedelta(days=45),
        )

        summary = await payouts.freelancer_finance_summary(
            organization_id,
            freelancer_id,
            FEB_5 - timedelta(days=1),
            FEB_5 + timedelta(days=10),
        )

        assert summary.total_cost == Decimal("60.00")
        assert summary.paid_total == Decimal("60.00")
        assert summary.pending_payout_total == Decimal("0.00")
        assert summary.due_total == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_currency_mismatch(
        self, payouts, finance_manager, freelancer_id, organization_id, project, make_rate, make_entry
    ):
        await make_rate("user", "30", rate_type="cost", scope_id=freelancer_id)
        await make_entry(project, FEB_5, 1)
        await payouts.create_payout(finance_manager, freelancer_id, "10", "EUR", "wire")

        with pytest.raises(CurrencyMismatchError):
            await payouts.freelancer_finance_summary(organization_id, freelancer_id)
