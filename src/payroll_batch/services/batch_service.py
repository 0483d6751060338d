"""Payroll batch service - main orchestrator for batch computation and lifecycle."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable
from uuid import UUID

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_batch.calculators.columns import ColumnConfig
from payroll_batch.calculators.data_sources import DataSources, SqlDataSources
from payroll_batch.calculators.engine import FormulaEngine
from payroll_batch.calculators.types import BatchRunSummary, CalculationResult
from payroll_batch.config import Settings, get_settings
from payroll_batch.exceptions import (
    ComputationError,
    ConcurrencyConflict,
    NotFoundError,
    PayrollBatchError,
    PersistenceError,
    StateError,
    ValidationError,
)
from payroll_batch.models import (
    BatchAuditEvent,
    Department,
    Division,
    EmployeePayrollRecord,
    HistorySnapshot,
    PayrollBatch,
    RecalculationRequest,
)
from payroll_batch.models.base import utcnow
from payroll_batch.periods import PayPeriod
from payroll_batch.services.config_service import ConfigService
from payroll_batch.services.scope_resolver import BatchScope, ScopeResolver
from payroll_batch.services.state_machine import BatchAction, BatchStateMachine, BatchStatus

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


@dataclass
class BatchFilters:
    """Filters for list_batches; None means no constraint."""

    year: int | None = None
    month: int | None = None
    division_id: UUID | None = None
    department_id: UUID | None = None
    status: str | None = None


@dataclass
class Discrepancy:
    employee_id: UUID
    kind: str
    detail: str = ""


@dataclass
class ValidationReport:
    """Read-only comparison of stored records against a fresh computation."""

    batch_id: UUID
    checked: int = 0
    discrepancies: list[Discrepancy] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not self.discrepancies

    def by_kind(self, kind: str) -> list[Discrepancy]:
        return [d for d in self.discrepancies if d.kind == kind]


@dataclass
class BulkActionResult:
    ok: bool
    status: str | None = None
    error: str | None = None


class BatchService:
    """Service for computing payroll batches and managing their lifecycle.

    Operations:
    - calculate / run_calculation: Resolve scope, evaluate every employee
    - approve / freeze / complete: Guarded lifecycle transitions
    - delete_batch: Remove a batch that was never approved
    - validate_batch: Read-only staleness and consistency report
    - bulk_approve: Approve many batches with per-batch results
    - migrate_batch_divisions: Re-point batches after a reorganisation

    Every status change goes through ``transition`` which applies a
    conditional ``UPDATE ... WHERE status = :expected``.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        engine: FormulaEngine | None = None,
        data_sources: DataSources | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.engine = engine or FormulaEngine(self.settings.engine_version)
        self.data_sources = data_sources or SqlDataSources(
            session, self.settings.pay_cycle_start_day
        )
        self.resolver = ScopeResolver(session, self.settings.pay_cycle_start_day)
        self.config_service = ConfigService(session)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_batch(self, batch_id: UUID) -> PayrollBatch:
        batch = await self.session.get(PayrollBatch, batch_id)
        if batch is None:
            raise NotFoundError("Payroll batch", batch_id)
        return batch

    async def list_batches(
        self,
        filters: BatchFilters | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> list[PayrollBatch]:
        """List batches, newest period first."""
        filters = filters or BatchFilters()
        query = select(PayrollBatch)
        if filters.year is not None:
            query = query.where(PayrollBatch.year == filters.year)
        if filters.month is not None:
            query = query.where(PayrollBatch.month == filters.month)
        if filters.division_id is not None:
            query = query.where(PayrollBatch.division_id == filters.division_id)
        if filters.department_id is not None:
            query = query.where(PayrollBatch.department_id == filters.department_id)
        if filters.status is not None:
            query = query.where(PayrollBatch.status == filters.status)

        query = (
            query.order_by(
                PayrollBatch.year.desc(),
                PayrollBatch.month.desc(),
                PayrollBatch.batch_number,
            )
            .offset(max(page - 1, 0) * page_size)
            .limit(page_size)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def list_employee_records(
        self,
        batch_id: UUID,
        status: str | None = None,
    ) -> list[EmployeePayrollRecord]:
        """Records of a batch in resolver order."""
        await self.get_batch(batch_id)
        query = select(EmployeePayrollRecord).where(EmployeePayrollRecord.batch_id == batch_id)
        if status is not None:
            query = query.where(EmployeePayrollRecord.status == status)
        query = query.order_by(EmployeePayrollRecord.sequence, EmployeePayrollRecord.employee_id)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Creation & calculation
    # ------------------------------------------------------------------

    async def create_batch(
        self,
        scope: BatchScope,
        period: PayPeriod,
        actor_id: UUID | None = None,
    ) -> PayrollBatch:
        """Create a draft batch for a scope and period.

        Raises ScopeResolutionError for an unknown division/department and
        ValidationError when a batch already exists for the same scope and period.
        """
        division, department = await self.resolver.check_scope(scope)

        existing = await self.session.execute(
            select(PayrollBatch.batch_number).where(
                PayrollBatch.division_id == scope.division_id,
                PayrollBatch.department_id.is_(None)
                if scope.department_id is None
                else PayrollBatch.department_id == scope.department_id,
                PayrollBatch.year == period.year,
                PayrollBatch.month == period.month,
            )
        )
        duplicate = existing.scalars().first()
        if duplicate is not None:
            raise ValidationError(
                f"Batch {duplicate} already exists for this division, department and period"
            )

        batch = PayrollBatch(
            batch_number=await self._next_batch_number(period, division, department),
            year=period.year,
            month=period.month,
            division_id=scope.division_id,
            department_id=scope.department_id,
            include_left_employees=scope.include_left_employees,
            status=BatchStatus.DRAFT.value,
            created_by=actor_id,
        )
        self.session.add(batch)
        await self.session.flush()
        await self.record_audit(batch.batch_id, "created", actor_id, None, batch.status)
        logger.info("Created batch %s (%s)", batch.batch_number, batch.batch_id)
        return batch

    async def calculate(
        self,
        scope: BatchScope,
        period: PayPeriod,
        actor_id: UUID | None = None,
        progress: ProgressCallback | None = None,
    ) -> BatchRunSummary:
        """Create a batch and compute every employee in scope."""
        batch = await self.create_batch(scope, period, actor_id)
        await self.checkpoint()
        return await self.run_calculation(batch.batch_id, actor_id, progress)

    async def run_calculation(
        self,
        batch_id: UUID,
        actor_id: UUID | None = None,
        progress: ProgressCallback | None = None,
    ) -> BatchRunSummary:
        """Calculate a draft batch, or resume an incomplete one.

        Resuming keeps records that were computed successfully and only
        evaluates the remaining employees, using the configuration version
        the batch started with.
        """
        batch = await self.get_batch(batch_id)
        resume = batch.status == BatchStatus.INCOMPLETE
        if resume and batch.config_version is not None:
            config = await self.config_service.get_version(batch.config_version)
        else:
            config = await self.config_service.get_active()

        await self.transition(
            batch,
            BatchAction.CALCULATE,
            actor_id,
            details={"config_version": config.version, "resume": resume},
            config_version=config.version,
            last_error=None,
        )
        await self.checkpoint()
        return await self.execute_calculation(
            batch, config, actor_id, progress, keep_completed=resume
        )

    async def execute_calculation(
        self,
        batch: PayrollBatch,
        config: ColumnConfig,
        actor_id: UUID | None = None,
        progress: ProgressCallback | None = None,
        keep_completed: bool = False,
    ) -> BatchRunSummary:
        """Evaluate all employees of a batch already in ``calculating``.

        Records are committed every ``CHECKPOINT_EVERY`` employees. On a
        storage failure the batch is moved to ``incomplete`` and
        PersistenceError is raised.
        """
        batch_id = batch.batch_id
        try:
            return await self._compute_records(batch, config, actor_id, progress, keep_completed)
        except (PersistenceError, SQLAlchemyError) as e:
            logger.exception("Calculation of batch %s failed", batch_id)
            await self.session.rollback()
            await self.mark_incomplete(batch_id, str(e))
            await self.checkpoint()
            if isinstance(e, PersistenceError):
                raise
            raise PersistenceError(str(e)) from e

    async def _compute_records(
        self,
        batch: PayrollBatch,
        config: ColumnConfig,
        actor_id: UUID | None,
        progress: ProgressCallback | None,
        keep_completed: bool,
    ) -> BatchRunSummary:
        period = PayPeriod(batch.year, batch.month)
        employee_ids = await self.resolver.resolve(self._scope_of(batch), period)
        in_scope = set(employee_ids)

        records = {r.employee_id: r for r in await self._load_records(batch.batch_id)}
        stale = [eid for eid in records if eid not in in_scope]
        if stale:
            await self.session.execute(
                delete(EmployeePayrollRecord).where(
                    EmployeePayrollRecord.batch_id == batch.batch_id,
                    EmployeePayrollRecord.employee_id.in_(stale),
                )
            )
            for eid in stale:
                records.pop(eid)

        total = len(employee_ids)
        processed = 0
        batch.total_count = total
        batch.processed_count = 0

        for sequence, employee_id in enumerate(employee_ids):
            record = records.get(employee_id)
            if keep_completed and record is not None and record.is_ok:
                record.sequence = sequence
            else:
                result, failure = await self._evaluate_employee(config, employee_id, period)
                records[employee_id] = self._store_record(
                    batch, record, employee_id, sequence, result, failure
                )

            processed += 1
            batch.processed_count = processed
            if processed % self.settings.checkpoint_every == 0:
                await self.checkpoint()
            if progress is not None:
                progress(processed, total)

        await self._refresh_totals(batch, list(records.values()))
        await self.transition(
            batch,
            BatchAction.FINISH,
            actor_id,
            details={"succeeded": batch.succeeded_count, "failed": batch.failed_count},
            calculated_at=utcnow(),
        )
        await self.checkpoint()

        logger.info(
            "Batch %s calculated: %d succeeded, %d failed",
            batch.batch_number,
            batch.succeeded_count,
            batch.failed_count,
        )
        return BatchRunSummary(
            batch_id=batch.batch_id,
            total=total,
            processed=processed,
            succeeded=batch.succeeded_count,
            failed=batch.failed_count,
            total_gross=batch.total_gross,
            total_deductions=batch.total_deductions,
            total_net=batch.total_net,
            failures={
                r.employee_id: r.failure_reason or ""
                for r in records.values()
                if not r.is_ok
            },
        )

    async def _evaluate_employee(
        self,
        config: ColumnConfig,
        employee_id: UUID,
        period: PayPeriod,
    ) -> tuple[CalculationResult | None, str | None]:
        """Evaluate one employee; failures are isolated to the employee."""
        try:
            result = await self.engine.evaluate(config, employee_id, period, self.data_sources)
        except ComputationError as e:
            logger.warning("Employee %s failed: %s", employee_id, e.reason)
            return None, e.reason
        except SQLAlchemyError:
            raise
        except Exception as e:
            logger.exception("Unexpected error evaluating employee %s", employee_id)
            return None, str(e)
        return result, None

    def _store_record(
        self,
        batch: PayrollBatch,
        record: EmployeePayrollRecord | None,
        employee_id: UUID,
        sequence: int,
        result: CalculationResult | None,
        failure: str | None,
    ) -> EmployeePayrollRecord:
        """Insert or overwrite the (batch, employee) record."""
        if record is None:
            record = EmployeePayrollRecord(batch_id=batch.batch_id, employee_id=employee_id)
            self.session.add(record)

        record.year = batch.year
        record.month = batch.month
        record.sequence = sequence
        record.computed_at = utcnow()
        if result is not None:
            record.row_json = result.row_json()
            record.payslip_json = result.payslip_json()
            record.warnings_json = list(result.warnings)
            record.source_fingerprint = result.source_fingerprint
            record.status = "ok"
            record.failure_reason = None
        else:
            record.row_json = []
            record.payslip_json = {}
            record.warnings_json = []
            record.source_fingerprint = ""
            record.status = "failed"
            record.failure_reason = failure
        return record

    async def _refresh_totals(
        self,
        batch: PayrollBatch,
        records: list[EmployeePayrollRecord] | None = None,
    ) -> None:
        """Recompute counters and money totals from the batch's records."""
        if records is None:
            records = await self._load_records(batch.batch_id)

        gross = deductions = net = Decimal("0")
        succeeded = failed = 0
        for record in records:
            if not record.is_ok:
                failed += 1
                continue
            succeeded += 1
            payslip = record.payslip_json or {}
            gross += Decimal(str(payslip.get("gross", 0)))
            deductions += Decimal(str(payslip.get("deductions", 0)))
            net += Decimal(str(payslip.get("net", 0)))

        batch.succeeded_count = succeeded
        batch.failed_count = failed
        batch.total_gross = gross
        batch.total_deductions = deductions
        batch.total_net = net

    async def mark_incomplete(self, batch_id: UUID, reason: str) -> PayrollBatch:
        """Move a ``calculating`` batch to ``incomplete``, keeping its records."""
        batch = await self.get_batch(batch_id)
        if batch.status != BatchStatus.CALCULATING:
            return batch
        await self.session.refresh(batch)
        if batch.status != BatchStatus.CALCULATING:
            return batch

        await self._refresh_totals(batch)
        await self.transition(
            batch,
            BatchAction.ABORT,
            None,
            details={"reason": reason},
            last_error=reason,
        )
        logger.warning("Batch %s marked incomplete: %s", batch.batch_number, reason)
        return batch

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def approve(
        self,
        batch_id: UUID,
        actor_id: UUID | None = None,
        acknowledge_failures: bool = False,
    ) -> PayrollBatch:
        """Approve a calculated batch.

        Failed records block approval unless the approver acknowledges them.
        Column warnings never block.
        """
        batch = await self.get_batch(batch_id)
        BatchStateMachine.next_status(batch.status, BatchAction.APPROVE)

        failed = await self._count_failed(batch_id)
        if failed and not acknowledge_failures:
            raise StateError(
                batch.status,
                BatchAction.APPROVE.value,
                f"{failed} employee record(s) failed; acknowledge failures to approve",
            )

        return await self.transition(
            batch,
            BatchAction.APPROVE,
            actor_id,
            details={"acknowledged_failures": failed} if failed else None,
            approved_at=utcnow(),
            approved_by=actor_id,
            failures_acknowledged_by=actor_id if failed else None,
        )

    async def freeze(self, batch_id: UUID, actor_id: UUID | None = None) -> PayrollBatch:
        batch = await self.get_batch(batch_id)
        return await self.transition(
            batch,
            BatchAction.FREEZE,
            actor_id,
            frozen_at=utcnow(),
            frozen_by=actor_id,
        )

    async def complete(self, batch_id: UUID, actor_id: UUID | None = None) -> PayrollBatch:
        batch = await self.get_batch(batch_id)
        return await self.transition(
            batch,
            BatchAction.COMPLETE,
            actor_id,
            completed_at=utcnow(),
            completed_by=actor_id,
        )

    async def bulk_approve(
        self,
        batch_ids: list[UUID],
        actor_id: UUID | None = None,
        acknowledge_failures: bool = False,
    ) -> dict[UUID, BulkActionResult]:
        """Approve each batch independently and report a result per id."""
        results: dict[UUID, BulkActionResult] = {}
        for batch_id in batch_ids:
            try:
                batch = await self.approve(batch_id, actor_id, acknowledge_failures)
            except PayrollBatchError as e:
                results[batch_id] = BulkActionResult(ok=False, error=str(e))
                continue
            results[batch_id] = BulkActionResult(ok=True, status=batch.status)

        approved = sum(1 for r in results.values() if r.ok)
        logger.info("Bulk approve: %d of %d batches approved", approved, len(batch_ids))
        return results

    async def delete_batch(self, batch_id: UUID, actor_id: UUID | None = None) -> None:
        """Delete a draft, calculated or incomplete batch and everything it owns."""
        batch = await self.get_batch(batch_id)
        if not BatchStateMachine.can_delete(batch.status):
            raise StateError(batch.status, "delete")
        status, batch_number = batch.status, batch.batch_number

        for model in (EmployeePayrollRecord, HistorySnapshot, RecalculationRequest):
            await self.session.execute(delete(model).where(model.batch_id == batch_id))
        result = await self.session.execute(
            delete(PayrollBatch).where(
                PayrollBatch.batch_id == batch_id,
                PayrollBatch.status == status,
            )
        )
        if result.rowcount == 0:
            raise ConcurrencyConflict(batch_id, status)

        await self.record_audit(
            batch_id,
            "deleted",
            actor_id,
            status,
            None,
            {"batch_number": batch_number},
        )
        logger.info("Deleted batch %s", batch_number)

    # ------------------------------------------------------------------
    # Validation & maintenance
    # ------------------------------------------------------------------

    async def validate_batch(self, batch_id: UUID) -> ValidationReport:
        """Compare stored records against the current upstream data.

        Nothing is written. Reported kinds: missing_record, unexpected_record,
        failed_record, source_unavailable, stale_fingerprint, value_mismatch.
        """
        batch = await self.get_batch(batch_id)
        report = ValidationReport(batch_id=batch_id)
        period = PayPeriod(batch.year, batch.month)
        config = await self.config_service.get_version(batch.config_version or 0)

        employee_ids = await self.resolver.resolve(self._scope_of(batch), period)
        in_scope = set(employee_ids)
        records = {r.employee_id: r for r in await self._load_records(batch_id)}

        for employee_id in employee_ids:
            if employee_id not in records:
                report.discrepancies.append(
                    Discrepancy(employee_id, "missing_record", "employee in scope has no record")
                )
        for employee_id in records:
            if employee_id not in in_scope:
                report.discrepancies.append(
                    Discrepancy(employee_id, "unexpected_record", "employee no longer in scope")
                )

        for employee_id, record in records.items():
            report.checked += 1
            if not record.is_ok:
                report.discrepancies.append(
                    Discrepancy(employee_id, "failed_record", record.failure_reason or "")
                )
                continue
            try:
                fresh = await self.engine.evaluate(config, employee_id, period, self.data_sources)
            except ComputationError as e:
                report.discrepancies.append(Discrepancy(employee_id, "source_unavailable", e.reason))
                continue

            if fresh.source_fingerprint != record.source_fingerprint:
                report.discrepancies.append(
                    Discrepancy(employee_id, "stale_fingerprint", "upstream data changed")
                )
            if fresh.row_json() != list(record.row_json):
                report.discrepancies.append(
                    Discrepancy(employee_id, "value_mismatch", "recomputed row differs")
                )

        logger.info(
            "Validated batch %s: %d records checked, %d discrepancies",
            batch.batch_number,
            report.checked,
            len(report.discrepancies),
        )
        return report

    async def migrate_batch_divisions(
        self,
        division_map: dict[UUID, UUID],
        department_map: dict[UUID, UUID] | None = None,
        actor_id: UUID | None = None,
    ) -> list[UUID]:
        """Re-point batches at new divisions/departments after a reorganisation.

        Employee records are not touched. Returns the ids of migrated batches.
        """
        department_map = department_map or {}
        for target in set(division_map.values()):
            if await self.session.get(Division, target) is None:
                raise ValidationError(f"Unknown target division {target}")
        for target in set(department_map.values()):
            if await self.session.get(Department, target) is None:
                raise ValidationError(f"Unknown target department {target}")

        conditions = []
        if division_map:
            conditions.append(PayrollBatch.division_id.in_(list(division_map)))
        if department_map:
            conditions.append(PayrollBatch.department_id.in_(list(department_map)))
        if not conditions:
            return []

        result = await self.session.execute(
            select(PayrollBatch).where(or_(*conditions)).order_by(PayrollBatch.batch_number)
        )

        migrated: list[UUID] = []
        for batch in result.scalars().all():
            before = {"division_id": str(batch.division_id), "department_id": _str_or_none(batch.department_id)}
            batch.division_id = division_map.get(batch.division_id, batch.division_id)
            if batch.department_id is not None:
                batch.department_id = department_map.get(batch.department_id, batch.department_id)
            after = {"division_id": str(batch.division_id), "department_id": _str_or_none(batch.department_id)}
            if before == after:
                continue
            migrated.append(batch.batch_id)
            await self.record_audit(
                batch.batch_id,
                "migrated",
                actor_id,
                batch.status,
                batch.status,
                {"before": before, "after": after},
            )

        await self.session.flush()
        logger.info("Migrated %d batches to new divisions", len(migrated))
        return migrated

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def transition(
        self,
        batch: PayrollBatch,
        action: BatchAction,
        actor_id: UUID | None,
        details: dict[str, Any] | None = None,
        **values: Any,
    ) -> PayrollBatch:
        """Apply a status change with a compare-and-swap on the current status.

        Raises StateError if the action is illegal from the current status and
        ConcurrencyConflict if the stored status no longer matches.
        """
        from_status = batch.status
        to_status = BatchStateMachine.next_status(from_status, action)

        result = await self.session.execute(
            update(PayrollBatch)
            .where(
                PayrollBatch.batch_id == batch.batch_id,
                PayrollBatch.status == from_status,
            )
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConcurrencyConflict(batch.batch_id, from_status, f"{action.value} rejected")

        batch.status = to_status
        for key, value in values.items():
            setattr(batch, key, value)

        await self.record_audit(
            batch.batch_id, action.value, actor_id, from_status, to_status, details
        )
        logger.info(
            "Batch %s: %s -> %s (%s)",
            batch.batch_number,
            from_status,
            to_status,
            action.value,
        )
        return batch

    async def checkpoint(self) -> None:
        """Commit pending work, wrapping storage failures."""
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Checkpoint failed: {e}") from e

    async def _load_records(self, batch_id: UUID) -> list[EmployeePayrollRecord]:
        result = await self.session.execute(
            select(EmployeePayrollRecord).where(EmployeePayrollRecord.batch_id == batch_id)
        )
        return list(result.scalars().all())

    async def _count_failed(self, batch_id: UUID) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(EmployeePayrollRecord)
            .where(
                EmployeePayrollRecord.batch_id == batch_id,
                EmployeePayrollRecord.status == "failed",
            )
        )
        return result.scalar_one()

    async def _next_batch_number(
        self,
        period: PayPeriod,
        division: Division,
        department: Department | None,
    ) -> str:
        """``PB-YYYYMM-<division>[-<department>]-NNN``"""
        prefix = f"PB-{period.year:04d}{period.month:02d}-{division.code}"
        if department is not None:
            prefix += f"-{department.code}"

        result = await self.session.execute(
            select(PayrollBatch.batch_number).where(
                PayrollBatch.batch_number.like(f"{prefix}-%")
            )
        )
        sequence = 0
        for number in result.scalars().all():
            suffix = number[len(prefix) + 1:]
            if suffix.isdigit():
                sequence = max(sequence, int(suffix))
        return f"{prefix}-{sequence + 1:03d}"

    async def record_audit(
        self,
        batch_id: UUID,
        action: str,
        actor_id: UUID | None,
        from_status: str | None,
        to_status: str | None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Record an audit event for a batch action."""
        self.session.add(
            BatchAuditEvent(
                batch_id=batch_id,
                actor_id=actor_id,
                action=action,
                from_status=from_status,
                to_status=to_status,
                details_json=details,
            )
        )

    @staticmethod
    def _scope_of(batch: PayrollBatch) -> BatchScope:
        return BatchScope(
            division_id=batch.division_id,
            department_id=batch.department_id,
            include_left_employees=batch.include_left_employees,
        )


def _str_or_none(value: UUID | None) -> str | None:
    return str(value) if value is not None else None
