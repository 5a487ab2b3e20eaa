"""Tests for the operational command line interface."""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from billing_engine.cli import BillingCli
from billing_engine.models import Base, Payout, Project, Rate, TimeEntry


class FileDatabase:
    """SQLite file database usable across separate event loops."""

    def __init__(self, path):
        self.url = f"sqlite+aiosqlite:///{path}"

    @asynccontextmanager
    async def session(self):
        engine = create_async_engine(self.url)
        try:
            async with async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)() as session:
                yield session
                await session.commit()
        finally:
            await engine.dispose()

    def seed(self, *rows) -> None:
        async def _seed():
            engine = create_async_engine(self.url)
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            await engine.dispose()
            async with self.session() as session:
                session.add_all(rows)

        asyncio.run(_seed())


@pytest.fixture
def database(tmp_path):
    return FileDatabase(tmp_path / "cli.db")


@pytest.fixture
def cli(database):
    return BillingCli(session_factory=database.session)


class TestBillingCli:
    """Test the CLI commands against a file database."""

    def test_no_command(self, cli):
        assert cli.run([]) == 1

    def test_recompute(self, cli, database, capsys):
        organization_id = uuid4()
        project = Project(id=uuid4(), organization_id=organization_id, name="Docs", currency="USD")
        start = datetime(2024, 2, 5, 9, tzinfo=timezone.utc)
        database.seed(
            project,
            Rate(
                organization_id=organization_id,
                scope="project",
                scope_id=project.id,
                rate_type="billable",
                currency="USD",
                hourly_rate=Decimal("80"),
                created_by=uuid4(),
            ),
            TimeEntry(
                organization_id=organization_id,
                user_id=uuid4(),
                project_id=project.id,
                start_ts=start,
                end_ts=start + timedelta(hours=2),
                duration_seconds=7200,
                billable=True,
                source="manual",
                paused_intervals=[],
                idle_trim_applied_seconds=0,
            ),
        )

        assert cli.run(["recompute", "--project-id", str(project.id)]) == 0

        out = capsys.readouterr().out
        assert "Revenue:" in out
        assert "160.00 USD" in out

    def test_unknown_project_reports_error(self, cli, database, capsys):
        database.seed()

        assert cli.run(["recompute", "--project-id", str(uuid4())]) == 1

        assert capsys.readouterr().err.startswith("ERROR [NOT_FOUND]")

    def test_export_payouts(self, cli, database, tmp_path):
        organization_id = uuid4()
        database.seed(
            Payout(
                organization_id=organization_id,
                freelancer_user_id=uuid4(),
                amount=Decimal("75"),
                currency="USD",
                payout_method="wire",
                status="pending",
                payout_metadata={},
                created_by=uuid4(),
                created_at=datetime(2024, 3, 1, tzinfo=timezone.utc),
            )
        )
        output = tmp_path / "payouts.csv"

        code = cli.run(
            ["export-payouts", "--organization-id", str(organization_id), "--output", str(output)]
        )

        assert code == 0
        lines = output.read_text(encoding="utf-8").splitlines()
        assert lines[0].startswith("id,freelancer_user_id,freelancer_email")
        assert len(lines) == 2
        assert ",75.00,USD,wire,pending," in lines[1]

    def test_export_to_stdout(self, cli, database, capsys):
        database.seed()

        assert cli.run(["export-payouts", "--organization-id", str(uuid4())]) == 0

        assert capsys.readouterr().out.startswith("id,freelancer_user_id")
