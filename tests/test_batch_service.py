"""Tests for batch calculation and lifecycle operations."""

from __future__ import annotations

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from payroll_batch.calculators.data_sources import SqlDataSources
from payroll_batch.exceptions import (
    ConcurrencyConflict,
    NotFoundError,
    PersistenceError,
    ScopeResolutionError,
    StateError,
    ValidationError,
)
from payroll_batch.models import (
    BatchAuditEvent,
    Department,
    Division,
    Employee,
    PayRegisterSummary,
)
from payroll_batch.services.batch_service import BatchFilters, BatchService
from payroll_batch.services.scope_resolver import BatchScope, ScopeResolver

from conftest import (
    APPROVER_ID,
    ASHA_ID,
    BRUNO_ID,
    CHEN_ID,
    MARCH_2024,
    NORTH_ID,
    OPS_ID,
    PREPARER_ID,
    SOUTH_ID,
)

OPS_SCOPE = BatchScope(NORTH_ID, OPS_ID)
NORTH_SCOPE = BatchScope(NORTH_ID)


@pytest.fixture
def service(session, settings):
    return BatchService(session, settings)


class FlakyDataSources:
    """Raises a storage error when loading one employee."""

    def __init__(self, inner, fail_for):
        self.inner = inner
        self.fail_for = fail_for

    async def load(self, employee_id, period):
        if employee_id == self.fail_for:
            raise OperationalError("SELECT pay_register_summary", {}, Exception("disk I/O error"))
        return await self.inner.load(employee_id, period)


class TestCalculate:
    """Test batch calculation over a scope."""

    async def test_record_count_matches_resolver(self, service, session, columns):
        """Test that a batch holds one record per resolved employee."""
        summary = await service.calculate(OPS_SCOPE, MARCH_2024, PREPARER_ID)

        resolved = await ScopeResolver(session).resolve(OPS_SCOPE, MARCH_2024)
        records = await service.list_employee_records(summary.batch_id)
        assert [r.employee_id for r in records] == resolved
        assert summary.total == summary.processed == len(resolved)

        batch = await service.get_batch(summary.batch_id)
        assert batch.status == "calculated"
        assert batch.batch_number == "PB-202403-NTH-OPS-001"
        assert batch.config_version == columns
        assert batch.calculated_at is not None
        assert batch.progress_percent == 100.0

    async def test_rows_payslips_and_totals(self, service, columns):
        """Test row values, payslip buckets and batch totals."""
        summary = await service.calculate(OPS_SCOPE, MARCH_2024, PREPARER_ID)
        records = await service.list_employee_records(summary.batch_id)

        asha = records[0]
        assert asha.row["Net Pay"] == 34400
        assert list(asha.row) == [
            "Emp No",
            "Basic Pay",
            "Payable Days",
            "Month Days",
            "Earned Basic",
            "HRA",
            "Arrears",
            "PF",
            "Net Pay",
        ]
        assert asha.payslip_json["gross"] == 36200
        assert len(asha.source_fingerprint) == 32

        assert summary.total_gross == Decimal("61877.42")
        assert summary.total_deductions == Decimal("3600")
        assert summary.total_net == Decimal("58277.42")

    async def test_progress_callback(self, service, columns):
        """Test that progress is reported after each employee."""
        calls = []
        await service.calculate(OPS_SCOPE, MARCH_2024, progress=lambda p, t: calls.append((p, t)))
        assert calls == [(1, 2), (2, 2)]

    async def test_missing_pay_register_isolated(self, service, columns):
        """Test that a missing pay register fails only that employee."""
        summary = await service.calculate(NORTH_SCOPE, MARCH_2024, PREPARER_ID)

        assert summary.succeeded == 2
        assert summary.failed == 1
        assert summary.failures == {CHEN_ID: "no pay register for 2024-03"}

        failed = await service.list_employee_records(summary.batch_id, status="failed")
        assert [r.employee_id for r in failed] == [CHEN_ID]
        assert failed[0].row_json == []

    async def test_empty_scope_gives_empty_calculated_batch(self, service, session, columns):
        """Test that an empty scope still yields a calculated batch."""
        empty = Department(division_id=NORTH_ID, code="EMP", name="Empty")
        session.add(empty)
        await session.commit()

        summary = await service.calculate(BatchScope(NORTH_ID, empty.department_id), MARCH_2024)
        batch = await service.get_batch(summary.batch_id)

        assert summary.total == 0
        assert batch.status == "calculated"
        assert await service.list_employee_records(batch.batch_id) == []

    async def test_duplicate_batch_rejected(self, service, columns):
        """Test that a second batch for the same scope and period is rejected."""
        await service.calculate(OPS_SCOPE, MARCH_2024)
        with pytest.raises(ValidationError, match="already exists"):
            await service.create_batch(OPS_SCOPE, MARCH_2024)

    async def test_batch_numbers_per_scope(self, service, columns):
        """Test batch number format for division and department scopes."""
        division_batch = await service.create_batch(NORTH_SCOPE, MARCH_2024)
        department_batch = await service.create_batch(OPS_SCOPE, MARCH_2024)
        south_batch = await service.create_batch(BatchScope(SOUTH_ID), MARCH_2024)

        assert division_batch.batch_number == "PB-202403-NTH-001"
        assert department_batch.batch_number == "PB-202403-NTH-OPS-001"
        assert south_batch.batch_number == "PB-202403-STH-001"

    async def test_unknown_division_rejected(self, service, columns):
        """Test that an unknown division is rejected before a batch is created."""
        with pytest.raises(ScopeResolutionError):
            await service.calculate(BatchScope(uuid4()), MARCH_2024)

    async def test_storage_failure_marks_incomplete_then_resume(self, session, settings, columns):
        """Test that a storage failure leaves the batch incomplete and resumable."""
        flaky = FlakyDataSources(SqlDataSources(session), fail_for=BRUNO_ID)
        service = BatchService(session, settings, data_sources=flaky)
        batch = await service.create_batch(OPS_SCOPE, MARCH_2024)
        await session.commit()

        with pytest.raises(PersistenceError):
            await service.run_calculation(batch.batch_id)

        batch = await service.get_batch(batch.batch_id)
        assert batch.status == "incomplete"
        assert "disk I/O error" in batch.last_error
        records = await service.list_employee_records(batch.batch_id)
        assert [r.employee_id for r in records] == [ASHA_ID]

        summary = await BatchService(session, settings).run_calculation(batch.batch_id)
        assert summary.succeeded == 2
        batch = await service.get_batch(batch.batch_id)
        assert batch.status == "calculated"
        assert batch.last_error is None


class TestLifecycle:
    """Test approve, freeze, complete and delete."""

    async def test_approve_freeze_complete(self, service, session, columns):
        """Test the full lifecycle and its audit trail."""
        summary = await service.calculate(OPS_SCOPE, MARCH_2024, PREPARER_ID)

        batch = await service.approve(summary.batch_id, APPROVER_ID)
        assert batch.status == "approved"
        assert batch.approved_by == APPROVER_ID
        assert batch.failures_acknowledged_by is None

        batch = await service.freeze(summary.batch_id, APPROVER_ID)
        assert batch.status == "frozen"
        batch = await service.complete(summary.batch_id, APPROVER_ID)
        assert batch.status == "completed"

        with pytest.raises(StateError):
            await service.freeze(summary.batch_id, APPROVER_ID)

        await session.flush()
        result = await session.execute(
            select(BatchAuditEvent.action).where(BatchAuditEvent.batch_id == summary.batch_id)
        )
        actions = set(result.scalars().all())
        assert {"created", "calculate", "finish", "approve", "freeze", "complete"} <= actions

    async def test_approve_requires_acknowledged_failures(self, service, columns):
        """Test that failed records block approval until acknowledged."""
        summary = await service.calculate(NORTH_SCOPE, MARCH_2024, PREPARER_ID)

        with pytest.raises(StateError, match="acknowledge"):
            await service.approve(summary.batch_id, APPROVER_ID)
        assert (await service.get_batch(summary.batch_id)).status == "calculated"

        batch = await service.approve(summary.batch_id, APPROVER_ID, acknowledge_failures=True)
        assert batch.status == "approved"
        assert batch.failures_acknowledged_by == APPROVER_ID

    async def test_approve_draft_rejected(self, service, columns):
        """Test that a draft batch cannot be approved."""
        batch = await service.create_batch(OPS_SCOPE, MARCH_2024)
        with pytest.raises(StateError) as exc_info:
            await service.approve(batch.batch_id, APPROVER_ID)
        assert exc_info.value.from_status == "draft"

    async def test_bulk_approve_reports_per_batch(self, service, columns):
        """Test that bulk approval reports each batch separately."""
        ok = await service.calculate(OPS_SCOPE, MARCH_2024)
        draft = await service.create_batch(BatchScope(SOUTH_ID), MARCH_2024)
        missing = uuid4()

        results = await service.bulk_approve([ok.batch_id, draft.batch_id, missing], APPROVER_ID)

        assert results[ok.batch_id].ok is True
        assert results[ok.batch_id].status == "approved"
        assert results[draft.batch_id].ok is False
        assert "draft" in results[draft.batch_id].error
        assert results[missing].ok is False
        assert (await service.get_batch(draft.batch_id)).status == "draft"

    async def test_double_freeze_exactly_one_conflict(self, session_factory, settings, columns):
        """Test that two sessions freezing the same batch yield one conflict."""
        async with session_factory() as s:
            svc = BatchService(s, settings)
            summary = await svc.calculate(OPS_SCOPE, MARCH_2024)
            await svc.approve(summary.batch_id, APPROVER_ID)
            await s.commit()
        batch_id = summary.batch_id

        async with session_factory() as a, session_factory() as b:
            first, second = BatchService(a, settings), BatchService(b, settings)
            # Both hold the batch while it is still approved
            held_a = await first.get_batch(batch_id)
            held_b = await second.get_batch(batch_id)
            assert held_a.status == held_b.status == "approved"

            outcomes = []
            for svc, s in ((first, a), (second, b)):
                try:
                    await svc.freeze(batch_id, APPROVER_ID)
                    await s.commit()
                    outcomes.append("frozen")
                except ConcurrencyConflict:
                    await s.rollback()
                    outcomes.append("conflict")

        assert outcomes == ["frozen", "conflict"]

    async def test_delete_rules(self, service, columns):
        """Test which statuses allow deletion."""
        calculated = await service.calculate(OPS_SCOPE, MARCH_2024)
        await service.delete_batch(calculated.batch_id)
        with pytest.raises(NotFoundError):
            await service.get_batch(calculated.batch_id)

        approved = await service.calculate(OPS_SCOPE, MARCH_2024)
        await service.approve(approved.batch_id)
        with pytest.raises(StateError):
            await service.delete_batch(approved.batch_id)

    async def test_list_batches_filters(self, service, columns):
        """Test batch listing filters."""
        ops = await service.calculate(OPS_SCOPE, MARCH_2024)
        await service.create_batch(BatchScope(SOUTH_ID), MARCH_2024)

        calculated = await service.list_batches(BatchFilters(status="calculated"))
        assert [b.batch_id for b in calculated] == [ops.batch_id]
        assert len(await service.list_batches(BatchFilters(year=2024, month=3))) == 2
        assert await service.list_batches(BatchFilters(month=4)) == []
        assert len(await service.list_batches(page=2, page_size=1)) == 1


class TestValidateBatch:
    """Test batch staleness validation."""

    async def test_fresh_batch_is_clean(self, service, columns):
        """Test that a freshly calculated batch reports no issues."""
        summary = await service.calculate(OPS_SCOPE, MARCH_2024)
        report = await service.validate_batch(summary.batch_id)

        assert report.checked == 2
        assert report.is_clean

    async def test_detects_stale_missing_and_failed(self, service, session, columns):
        """Test detection of stale, missing and failed records."""
        summary = await service.calculate(NORTH_SCOPE, MARCH_2024)

        result = await session.execute(
            select(PayRegisterSummary).where(PayRegisterSummary.employee_id == BRUNO_ID)
        )
        register = result.scalar_one()
        register.version = 2
        register.totals_json = {**register.totals_json, "payable_days": 30}
        session.add(
            Employee(
                emp_no="E007",
                name="Gita",
                division_id=NORTH_ID,
                department_id=OPS_ID,
                basic_pay=Decimal("15000"),
            )
        )
        await session.flush()

        report = await service.validate_batch(summary.batch_id)

        assert {d.employee_id for d in report.by_kind("stale_fingerprint")} == {BRUNO_ID}
        assert {d.employee_id for d in report.by_kind("value_mismatch")} == {BRUNO_ID}
        assert {d.employee_id for d in report.by_kind("failed_record")} == {CHEN_ID}
        assert len(report.by_kind("missing_record")) == 1
        assert report.by_kind("unexpected_record") == []

        # Read only
        batch = await service.get_batch(summary.batch_id)
        assert batch.status == "calculated"


class TestMigrateBatchDivisions:
    """Test division migration of batch references."""

    async def test_migrate_rewrites_references_only(self, service, session, columns):
        """Test that migration rewrites division references and nothing else."""
        summary = await service.calculate(OPS_SCOPE, MARCH_2024)
        before = [(r.employee_id, r.row_json) for r in await service.list_employee_records(summary.batch_id)]

        central = Division(code="CEN", name="Central")
        session.add(central)
        await session.flush()
        central_ops = Department(division_id=central.division_id, code="OPS", name="Operations")
        session.add(central_ops)
        await session.flush()

        migrated = await service.migrate_batch_divisions(
            {NORTH_ID: central.division_id},
            {OPS_ID: central_ops.department_id},
        )

        assert migrated == [summary.batch_id]
        batch = await service.get_batch(summary.batch_id)
        assert batch.division_id == central.division_id
        assert batch.department_id == central_ops.department_id
        after = [(r.employee_id, r.row_json) for r in await service.list_employee_records(summary.batch_id)]
        assert after == before

    async def test_unknown_target_rejected(self, service, columns):
        """Test that an unknown target division is rejected."""
        await service.calculate(OPS_SCOPE, MARCH_2024)
        with pytest.raises(ValidationError, match="Unknown target division"):
            await service.migrate_batch_divisions({NORTH_ID: uuid4()})
