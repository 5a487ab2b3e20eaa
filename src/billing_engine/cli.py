"""Billing engine command line interface.

Operational tools for:
- Recomputing a project's financial snapshot
- Sweeping sent invoices past their due date to overdue
- Exporting the payout ledger as CSV
- Creating the schema on a fresh database

Usage:
    python -m billing_engine.cli recompute --project-id X
    python -m billing_engine.cli sweep-overdue [--organization-id X]
    python -m billing_engine.cli export-payouts --organization-id X [--from T] [--output file.csv]
    python -m billing_engine.cli init-db
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Callable
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.config import configure_logging
from billing_engine.database import create_schema, dispose_db, get_session
from billing_engine.errors import EngineError
from billing_engine.services import FinancialsService, InvoiceService, PayoutService

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


def parse_datetime(s: str) -> datetime:
    """Parse ISO datetime string."""
    return datetime.fromisoformat(s.replace("Z", "+00:00"))


def parse_uuid(s: str) -> UUID:
    """Parse UUID string."""
    return UUID(s)


class BillingCli:
    """Billing engine command line interface."""

    def __init__(self, session_factory: SessionFactory = get_session) -> None:
        self.session_factory = session_factory
        self.parser = self._build_parser()

    def _build_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog="python -m billing_engine.cli",
            description="Billing engine operational tools",
        )
        parser.add_argument("--log-level", type=str, default=None, help="Override LOG_LEVEL")
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        recompute = subparsers.add_parser(
            "recompute",
            help="Recompute a project's financial snapshot",
        )
        recompute.add_argument(
            "--project-id",
            type=parse_uuid,
            required=True,
            help="Project to recompute",
        )

        sweep = subparsers.add_parser(
            "sweep-overdue",
            help="Mark sent invoices past their due date as overdue",
        )
        sweep.add_argument(
            "--organization-id",
            type=parse_uuid,
            help="Limit the sweep to one organization",
        )

        export = subparsers.add_parser(
            "export-payouts",
            help="Export the payout ledger as CSV",
        )
        export.add_argument(
            "--organization-id",
            type=parse_uuid,
            required=True,
            help="Organization to export",
        )
        export.add_argument(
            "--from",
            dest="created_from",
            type=parse_datetime,
            help="Only payouts created at or after this timestamp (ISO format)",
        )
        export.add_argument(
            "--output",
            type=str,
            help="Output file path (default: stdout)",
        )

        subparsers.add_parser("init-db", help="Create all tables")

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)
        configure_logging(parsed.log_level)

        if not parsed.command:
            self.parser.print_help()
            return 1

        handlers: dict[str, Callable[[argparse.Namespace], Any]] = {
            "recompute": self._cmd_recompute,
            "sweep-overdue": self._cmd_sweep_overdue,
            "export-payouts": self._cmd_export_payouts,
            "init-db": self._cmd_init_db,
        }
        handler = handlers.get(parsed.command)
        if handler is None:
            print(f"Unknown command: {parsed.command}", file=sys.stderr)
            return 1

        try:
            return asyncio.run(self._execute(handler, parsed))
        except EngineError as e:
            print(f"ERROR [{e.code}]: {e.message}", file=sys.stderr)
            return 1

    async def _execute(
        self, handler: Callable[[argparse.Namespace], Any], args: argparse.Namespace
    ) -> int:
        try:
            return await handler(args)
        finally:
            if self.session_factory is get_session:
                await dispose_db()

    async def _cmd_recompute(self, args: argparse.Namespace) -> int:
        async with self.session_factory() as session:
            snapshot = await FinancialsService(session).recompute(args.project_id)
            print(f"Project {args.project_id} (v{snapshot.version})")
            print(f"  Revenue:   {snapshot.revenue:>12} {snapshot.currency}")
            print(f"  Cost:      {snapshot.freelancer_cost:>12}")
            print(f"  Expenses:  {snapshot.expenses:>12}")
            print(f"  Profit:    {snapshot.profit:>12}")
            margin = snapshot.margin_percent
            print(f"  Margin:    {'n/a' if margin is None else f'{margin}%':>12}")
        return 0

    async def _cmd_sweep_overdue(self, args: argparse.Namespace) -> int:
        async with self.session_factory() as session:
            invoices = await InvoiceService(session).mark_overdue_invoices(
                organization_id=args.organization_id
            )
            for invoice in invoices:
                print(f"  {invoice.number} is overdue (due {invoice.due_date})")
            print(f"{len(invoices)} invoice(s) marked overdue")
        return 0

    async def _cmd_export_payouts(self, args: argparse.Namespace) -> int:
        async with self.session_factory() as session:
            content = await PayoutService(session).export_payouts_csv(
                args.organization_id, created_from=args.created_from
            )
        if args.output:
            with open(args.output, "w", encoding="utf-8", newline="") as f:
                f.write(content)
            logger.info("Exported payouts of %s to %s", args.organization_id, args.output)
        else:
            sys.stdout.write(content)
        return 0

    async def _cmd_init_db(self, args: argparse.Namespace) -> int:
        await create_schema()
        print("Schema created")
        return 0


def main() -> int:
    """CLI entry point."""
    cli = BillingCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
