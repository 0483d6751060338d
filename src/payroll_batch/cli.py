"""Payroll batch command line interface.

Provides operational tools for:
- Schema creation
- Output column validation and versioned saving
- Batch calculation
- Batch inspection and staleness validation

Usage:
    python -m payroll_batch init-db
    python -m payroll_batch validate-columns columns.json
    python -m payroll_batch save-columns columns.json
    python -m payroll_batch calculate --division-id X --period 2024-03
    python -m payroll_batch show BATCH_ID --records
    python -m payroll_batch validate BATCH_ID
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator, Callable
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from payroll_batch.calculators.columns import build_config
from payroll_batch.config import get_settings
from payroll_batch.database import create_schema, get_engine, make_session_factory
from payroll_batch.exceptions import ColumnConfigError, PayrollBatchError
from payroll_batch.periods import PayPeriod
from payroll_batch.services.batch_service import BatchService
from payroll_batch.services.config_service import ConfigService
from payroll_batch.services.scope_resolver import BatchScope

logger = logging.getLogger(__name__)


def parse_uuid(s: str) -> UUID:
    """Parse UUID string."""
    return UUID(s)


def load_columns_file(path: str) -> list[dict[str, Any]]:
    """Read a JSON column list, accepting ``{"columns": [...]}`` too."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("columns", [])
    return data


class PayrollBatchCli:
    """Payroll batch Command Line Interface."""

    def __init__(self) -> None:
        self.parser = self._build_parser()

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="python -m payroll_batch",
            description="Payroll batch computation tools",
        )
        parser.add_argument(
            "--database-url",
            type=str,
            help="Database URL (default: DATABASE_URL from the environment)",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        subparsers.add_parser("init-db", help="Create all tables")

        validate_columns = subparsers.add_parser(
            "validate-columns",
            help="Validate an output column configuration file",
        )
        validate_columns.add_argument("file", type=str, help="JSON file with the column list")

        save_columns = subparsers.add_parser(
            "save-columns",
            help="Validate and store a new column configuration version",
        )
        save_columns.add_argument("file", type=str, help="JSON file with the column list")
        save_columns.add_argument("--actor-id", type=parse_uuid, help="User saving the configuration")

        calculate = subparsers.add_parser("calculate", help="Create and calculate a batch")
        calculate.add_argument("--division-id", type=parse_uuid, required=True)
        calculate.add_argument("--department-id", type=parse_uuid)
        calculate.add_argument(
            "--period",
            type=str,
            required=True,
            help="Pay period as YYYY-MM",
        )
        calculate.add_argument(
            "--include-left",
            action="store_true",
            help="Include employees who left during the period",
        )
        calculate.add_argument("--actor-id", type=parse_uuid)

        show = subparsers.add_parser("show", help="Show a batch")
        show.add_argument("batch_id", type=parse_uuid)
        show.add_argument("--records", action="store_true", help="Print employee rows")

        validate = subparsers.add_parser(
            "validate",
            help="Compare a batch's records against current upstream data",
        )
        validate.add_argument("batch_id", type=parse_uuid)

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        logging.basicConfig(
            level=getattr(logging, get_settings().log_level, logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

        handlers: dict[str, Callable[..., int]] = {
            "init-db": self._cmd_init_db,
            "validate-columns": self._cmd_validate_columns,
            "save-columns": self._cmd_save_columns,
            "calculate": self._cmd_calculate,
            "show": self._cmd_show,
            "validate": self._cmd_validate,
        }

        handler = handlers.get(parsed.command)
        if handler is None:
            print(f"Unknown command: {parsed.command}", file=sys.stderr)
            return 1
        try:
            return handler(parsed)
        except PayrollBatchError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return 1

    @asynccontextmanager
    async def _session(self, args: argparse.Namespace) -> AsyncGenerator[AsyncSession, None]:
        engine = get_engine(args.database_url)
        factory = make_session_factory(engine)
        try:
            async with factory() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        finally:
            await engine.dispose()

    def _cmd_init_db(self, args: argparse.Namespace) -> int:
        """Create the schema."""

        async def _run() -> None:
            engine = get_engine(args.database_url)
            try:
                await create_schema(engine)
            finally:
                await engine.dispose()

        asyncio.run(_run())
        print("Schema created.")
        return 0

    def _cmd_validate_columns(self, args: argparse.Namespace) -> int:
        """Validate a column file without touching the database."""
        try:
            config = build_config(load_columns_file(args.file))
        except ColumnConfigError as e:
            print("Column configuration: INVALID")
            for problem in e.problems:
                print(f"  - {problem}")
            return 1

        print(f"Column configuration: VALID ({len(config.columns)} columns)")
        for column in config.columns:
            source = column.path if column.kind == "field" else column.expr
            print(f"  {column.header:<24} {column.kind:<8} {column.bucket:<10} {source}")
        return 0

    def _cmd_save_columns(self, args: argparse.Namespace) -> int:
        """Store a new configuration version."""
        payload = load_columns_file(args.file)

        async def _run() -> int:
            async with self._session(args) as session:
                config = await ConfigService(session).save_columns(payload, args.actor_id)
                return config.version

        version = asyncio.run(_run())
        print(f"Saved output column configuration version {version}.")
        return 0

    def _cmd_calculate(self, args: argparse.Namespace) -> int:
        """Create and calculate a batch."""
        scope = BatchScope(
            division_id=args.division_id,
            department_id=args.department_id,
            include_left_employees=args.include_left,
        )
        period = PayPeriod.parse(args.period)

        def progress(processed: int, total: int) -> None:
            print(f"\r  {processed}/{total}", end="", flush=True)

        async def _run() -> Any:
            async with self._session(args) as session:
                return await BatchService(session).calculate(scope, period, args.actor_id, progress)

        summary = asyncio.run(_run())
        print()
        print(f"Batch {summary.batch_id} calculated")
        print(f"  Employees:  {summary.total}")
        print(f"  Succeeded:  {summary.succeeded}")
        print(f"  Failed:     {summary.failed}")
        print(f"  Gross:      {summary.total_gross:>15,.2f}")
        print(f"  Deductions: {summary.total_deductions:>15,.2f}")
        print(f"  Net:        {summary.total_net:>15,.2f}")
        for employee_id, reason in summary.failures.items():
            print(f"    - {employee_id}: {reason}")
        return 0

    def _cmd_show(self, args: argparse.Namespace) -> int:
        """Print a batch and optionally its rows."""

        async def _run() -> None:
            async with self._session(args) as session:
                service = BatchService(session)
                batch = await service.get_batch(args.batch_id)
                print(f"Batch {batch.batch_number} ({batch.batch_id})")
                print(f"  Period:   {batch.period_label}")
                print(f"  Status:   {batch.status}")
                print(f"  Progress: {batch.processed_count}/{batch.total_count}")
                print(f"  Records:  {batch.succeeded_count} ok, {batch.failed_count} failed")
                print(f"  Net:      {batch.total_net:>15,.2f}")
                if batch.last_error:
                    print(f"  Last error: {batch.last_error}")
                if not args.records:
                    return
                for record in await service.list_employee_records(batch.batch_id):
                    if record.is_ok:
                        print(f"  {record.employee_id}: {json.dumps(record.row, default=str)}")
                    else:
                        print(f"  {record.employee_id}: FAILED {record.failure_reason}")

        asyncio.run(_run())
        return 0

    def _cmd_validate(self, args: argparse.Namespace) -> int:
        """Report stale or mismatched records."""

        async def _run() -> Any:
            async with self._session(args) as session:
                return await BatchService(session).validate_batch(args.batch_id)

        report = asyncio.run(_run())
        print(f"Checked {report.checked} records")
        if report.is_clean:
            print("Batch validation: PASSED")
            return 0

        print(f"Batch validation: {len(report.discrepancies)} discrepancies")
        for d in report.discrepancies:
            print(f"  - {d.employee_id} {d.kind}: {d.detail}")
        return 1


def main() -> int:
    """CLI entry point."""
    cli = PayrollBatchCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
