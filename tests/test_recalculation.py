"""Tests for two-party recalculation of approved batches."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from payroll_batch.exceptions import ConcurrencyConflict, StateError
from payroll_batch.models import Employee, PayRegisterSummary
from payroll_batch.models.base import utcnow
from payroll_batch.services.batch_service import BatchService
from payroll_batch.services.recalculation import RecalculationCoordinator
from payroll_batch.services.scope_resolver import BatchScope
from payroll_batch.services.snapshot_store import PRE_RECALCULATION, HistorySnapshotStore

from conftest import APPROVER_ID, ASHA_ID, BRUNO_ID, MARCH_2024, NORTH_ID, OPS_ID, PREPARER_ID

OPS_SCOPE = BatchScope(NORTH_ID, OPS_ID)


@pytest.fixture
def service(session, settings):
    return BatchService(session, settings)


@pytest.fixture
def coordinator(session, service, settings):
    return RecalculationCoordinator(session, service, settings=settings)


@pytest.fixture
async def approved_batch_id(service, columns):
    summary = await service.calculate(OPS_SCOPE, MARCH_2024, PREPARER_ID)
    await service.approve(summary.batch_id, APPROVER_ID)
    await service.checkpoint()
    return summary.batch_id


async def _grant(coordinator, batch_id):
    await coordinator.request_recalculation(batch_id, PREPARER_ID, "March attendance corrected")
    return await coordinator.grant_recalculation(batch_id, APPROVER_ID)


class TestRequest:
    """Test opening recalculation requests."""

    async def test_request_on_calculated_batch_rejected(self, service, coordinator, columns):
        """Test that a calculated batch cannot be recalculated."""
        summary = await service.calculate(OPS_SCOPE, MARCH_2024)
        with pytest.raises(StateError):
            await coordinator.request_recalculation(summary.batch_id, PREPARER_ID, "fix")

    async def test_reason_required(self, coordinator, approved_batch_id):
        """Test that a request needs a reason."""
        with pytest.raises(StateError, match="reason is required"):
            await coordinator.request_recalculation(approved_batch_id, PREPARER_ID, "   ")

    async def test_single_active_request(self, service, coordinator, approved_batch_id):
        """Test that a batch has at most one active request."""
        request = await coordinator.request_recalculation(approved_batch_id, PREPARER_ID, "fix")

        assert request.status == "pending"
        batch = await service.get_batch(approved_batch_id)
        assert batch.active_request_id == request.request_id

        with pytest.raises(StateError, match="already exists"):
            await coordinator.request_recalculation(approved_batch_id, APPROVER_ID, "again")

    async def test_concurrent_requests_claim_one_slot(
        self, session_factory, settings, approved_batch_id, monkeypatch
    ):
        """Two sessions that both saw no active request cannot both open one."""
        async with session_factory() as a, session_factory() as b:
            first = RecalculationCoordinator(a, settings=settings)
            second = RecalculationCoordinator(b, settings=settings)
            held = await second.batch_service.get_batch(approved_batch_id)
            assert held.active_request_id is None

            # The second session checked before the first one committed
            async def nothing_active(batch_id):
                return None

            monkeypatch.setattr(second, "get_active_request", nothing_active)

            await first.request_recalculation(approved_batch_id, PREPARER_ID, "fix")
            await a.commit()
            with pytest.raises(ConcurrencyConflict, match="another recalculation request"):
                await second.request_recalculation(approved_batch_id, APPROVER_ID, "fix too")
            await b.rollback()

        async with session_factory() as s:
            requests = await RecalculationCoordinator(s, settings=settings).list_requests(
                approved_batch_id
            )
            assert [r.status for r in requests] == ["pending"]

    async def test_frozen_batch_accepts_request(self, service, coordinator, approved_batch_id):
        """Test that a frozen batch accepts a request."""
        await service.freeze(approved_batch_id, APPROVER_ID)
        request = await coordinator.request_recalculation(approved_batch_id, PREPARER_ID, "fix")
        assert request.is_active


class TestGrantAndDeny:
    """Test granting and denying requests."""

    async def test_requester_cannot_grant(self, coordinator, approved_batch_id):
        """Test that the requester cannot grant their own request."""
        await coordinator.request_recalculation(approved_batch_id, PREPARER_ID, "fix")
        with pytest.raises(StateError, match="own request"):
            await coordinator.grant_recalculation(approved_batch_id, PREPARER_ID)

    async def test_grant_sets_expiry(self, coordinator, approved_batch_id, settings):
        """Test that a grant sets its expiry."""
        request = await _grant(coordinator, approved_batch_id)

        assert request.status == "granted"
        assert request.granter_id == APPROVER_ID
        assert request.expires_at - request.granted_at == timedelta(
            hours=settings.recalculation_grant_ttl_hours
        )

    async def test_grant_without_request_rejected(self, coordinator, approved_batch_id):
        """Test that granting needs a pending request."""
        with pytest.raises(StateError, match="no pending"):
            await coordinator.grant_recalculation(approved_batch_id, APPROVER_ID)

    async def test_deny_clears_request(self, service, coordinator, approved_batch_id):
        """Test that denying clears the batch's request."""
        await coordinator.request_recalculation(approved_batch_id, PREPARER_ID, "fix")
        denied = await coordinator.deny_recalculation(approved_batch_id, APPROVER_ID, "not needed")

        assert denied.status == "denied"
        assert (await service.get_batch(approved_batch_id)).active_request_id is None
        assert await coordinator.get_active_request(approved_batch_id) is None

        # A new request can be opened afterwards
        await coordinator.request_recalculation(approved_batch_id, PREPARER_ID, "fix again")
        assert len(await coordinator.list_requests(approved_batch_id)) == 2


class TestRecalculate:
    """Test recalculation with a granted request."""

    async def test_without_grant_rejected(self, service, coordinator, approved_batch_id):
        """Test that recalculation needs a grant."""
        with pytest.raises(StateError, match="no granted request"):
            await coordinator.recalculate(approved_batch_id, APPROVER_ID)

        await coordinator.request_recalculation(approved_batch_id, PREPARER_ID, "fix")
        with pytest.raises(StateError, match="no granted request"):
            await coordinator.recalculate(approved_batch_id, APPROVER_ID)
        assert (await service.get_batch(approved_batch_id)).status == "approved"

    async def test_recalculate_recomputes_and_snapshots(
        self, service, coordinator, session, approved_batch_id
    ):
        """Test that recalculation snapshots the batch and recomputes it."""
        request = await _grant(coordinator, approved_batch_id)

        result = await session.execute(
            select(PayRegisterSummary).where(PayRegisterSummary.employee_id == BRUNO_ID)
        )
        register = result.scalar_one()
        register.version = 2
        register.totals_json = {**register.totals_json, "payable_days": 31}
        await session.flush()

        summary = await coordinator.recalculate(approved_batch_id, APPROVER_ID)

        batch = await service.get_batch(approved_batch_id)
        assert batch.status == "calculated"
        assert batch.approved_by is None
        assert batch.active_request_id is None
        assert request.consumed_by == APPROVER_ID
        assert summary.succeeded == 2

        records = await service.list_employee_records(approved_batch_id)
        assert records[1].row["Earned Basic"] == 24000

        snapshots = await HistorySnapshotStore(session).list_snapshots(approved_batch_id)
        assert [s.trigger for s in snapshots] == [PRE_RECALCULATION]
        assert snapshots[0].payload_json["batch"]["status"] == "approved"

        # The grant is consumed; the batch is no longer approved either
        with pytest.raises(StateError):
            await coordinator.recalculate(approved_batch_id, APPROVER_ID)

    async def test_grant_consumed_once_across_sessions(
        self, session_factory, settings, approved_batch_id
    ):
        """Test that a grant is consumed only once across sessions."""
        async with session_factory() as s:
            await _grant(RecalculationCoordinator(s, settings=settings), approved_batch_id)
            await s.commit()

        async with session_factory() as a, session_factory() as b:
            first = RecalculationCoordinator(a, settings=settings)
            second = RecalculationCoordinator(b, settings=settings)
            held = await second.batch_service.get_batch(approved_batch_id)
            assert held.status == "approved"

            await first.recalculate(approved_batch_id, APPROVER_ID)
            with pytest.raises((StateError, ConcurrencyConflict)):
                await second.recalculate(approved_batch_id, APPROVER_ID)
            await b.rollback()

    async def test_expired_grant_rejected(self, coordinator, approved_batch_id):
        """Test that an expired grant is rejected."""
        request = await _grant(coordinator, approved_batch_id)
        request.expires_at = utcnow() - timedelta(minutes=1)

        with pytest.raises(StateError, match="expired"):
            await coordinator.recalculate(approved_batch_id, APPROVER_ID)

        # An expired grant no longer blocks a new request
        assert await coordinator.get_active_request(approved_batch_id) is None
        new_request = await coordinator.request_recalculation(approved_batch_id, PREPARER_ID, "retry")
        assert new_request.status == "pending"

    async def test_out_of_scope_record_removed(
        self, service, coordinator, session, approved_batch_id
    ):
        """Test that records for employees no longer in scope are removed."""
        bruno = await session.get(Employee, BRUNO_ID)
        bruno.is_active = False
        await session.flush()

        await _grant(coordinator, approved_batch_id)
        summary = await coordinator.recalculate(approved_batch_id, APPROVER_ID)

        records = await service.list_employee_records(approved_batch_id)
        assert [r.employee_id for r in records] == [ASHA_ID]
        assert summary.total == 1
        assert summary.total_net == Decimal("34400")
