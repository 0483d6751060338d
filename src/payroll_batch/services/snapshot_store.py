"""Append-only history snapshots of a batch and point-in-time rollback."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_batch.exceptions import ConcurrencyConflict, NotFoundError, StateError
from payroll_batch.models import (
    BatchAuditEvent,
    EmployeePayrollRecord,
    HistorySnapshot,
    PayrollBatch,
    RecalculationRequest,
)
from payroll_batch.models.base import ensure_utc
from payroll_batch.services.state_machine import BatchAction, BatchStateMachine

logger = logging.getLogger(__name__)

PRE_RECALCULATION = "pre-recalculation"
PRE_ROLLBACK_CHECKPOINT = "pre-rollback-checkpoint"

# Batch fields restored by a rollback
_BATCH_FIELDS = (
    "status",
    "config_version",
    "total_count",
    "processed_count",
    "succeeded_count",
    "failed_count",
    "total_gross",
    "total_deductions",
    "total_net",
    "calculated_at",
    "approved_at",
    "approved_by",
    "frozen_at",
    "frozen_by",
    "completed_at",
    "completed_by",
    "failures_acknowledged_by",
    "last_error",
)
_DATETIME_FIELDS = {"calculated_at", "approved_at", "frozen_at", "completed_at"}
_UUID_FIELDS = {"approved_by", "frozen_by", "completed_by", "failures_acknowledged_by"}
_DECIMAL_FIELDS = {"total_gross", "total_deductions", "total_net"}


def _dump(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in _DATETIME_FIELDS:
        return ensure_utc(value).isoformat()
    if name in _UUID_FIELDS:
        return str(value)
    if name in _DECIMAL_FIELDS:
        return str(value)
    return value


def _load(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in _DATETIME_FIELDS:
        return datetime.fromisoformat(value)
    if name in _UUID_FIELDS:
        return UUID(value)
    if name in _DECIMAL_FIELDS:
        return Decimal(value)
    return value


class HistorySnapshotStore:
    """Captures and restores complete batch state.

    A snapshot holds the batch's status, timestamps, actors, counters and
    totals, plus the full content of every employee record.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def capture(
        self,
        batch: PayrollBatch,
        trigger: str,
        actor_id: UUID | None = None,
    ) -> UUID:
        """Store a snapshot of the batch as it is now and return its id."""
        records = await self._load_records(batch.batch_id)
        payload = {
            "batch": {name: _dump(name, getattr(batch, name)) for name in _BATCH_FIELDS},
            "records": [self._dump_record(r) for r in records],
        }
        snapshot = HistorySnapshot(
            batch_id=batch.batch_id,
            captured_by=actor_id,
            trigger=trigger,
            payload_json=payload,
        )
        self.session.add(snapshot)
        await self.session.flush()
        logger.info(
            "Captured %s snapshot %s of batch %s (%d records)",
            trigger,
            snapshot.snapshot_id,
            batch.batch_number,
            len(records),
        )
        return snapshot.snapshot_id

    async def list_snapshots(self, batch_id: UUID) -> list[HistorySnapshot]:
        """Snapshots of a batch, oldest first."""
        result = await self.session.execute(
            select(HistorySnapshot)
            .where(HistorySnapshot.batch_id == batch_id)
            .order_by(HistorySnapshot.captured_at, HistorySnapshot.snapshot_id)
        )
        return list(result.scalars().all())

    async def get_snapshot(self, snapshot_id: UUID) -> HistorySnapshot:
        snapshot = await self.session.get(HistorySnapshot, snapshot_id)
        if snapshot is None:
            raise NotFoundError("History snapshot", snapshot_id)
        return snapshot

    async def rollback(
        self,
        batch_id: UUID,
        snapshot_id: UUID,
        actor_id: UUID | None = None,
    ) -> PayrollBatch:
        """Restore a batch and its records to a snapshot.

        The current state is captured as a ``pre-rollback-checkpoint`` first,
        so the rollback itself can be undone. Records created after the
        snapshot are deleted and records deleted since are re-created. Open
        recalculation requests are denied and the request slot is cleared.

        Raises StateError if the snapshot belongs to another batch or a
        calculation is in progress.
        """
        batch = await self.session.get(PayrollBatch, batch_id)
        if batch is None:
            raise NotFoundError("Payroll batch", batch_id)
        snapshot = await self.get_snapshot(snapshot_id)
        if snapshot.batch_id != batch_id:
            raise StateError(
                batch.status,
                BatchAction.ROLLBACK.value,
                f"snapshot {snapshot_id} belongs to another batch",
            )
        BatchStateMachine.next_status(batch.status, BatchAction.ROLLBACK)

        from_status = batch.status
        checkpoint_id = await self.capture(batch, PRE_ROLLBACK_CHECKPOINT, actor_id)

        restored = {
            name: _load(name, value)
            for name, value in snapshot.payload_json["batch"].items()
            if name in _BATCH_FIELDS
        }
        result = await self.session.execute(
            update(PayrollBatch)
            .where(
                PayrollBatch.batch_id == batch_id,
                PayrollBatch.status == from_status,
            )
            .values(**restored)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConcurrencyConflict(batch_id, from_status, "rollback rejected")
        for name, value in restored.items():
            setattr(batch, name, value)
        closed = await self._close_open_requests(batch)

        await self._restore_records(batch_id, snapshot.payload_json["records"])

        self.session.add(
            BatchAuditEvent(
                batch_id=batch_id,
                actor_id=actor_id,
                action=BatchAction.ROLLBACK.value,
                from_status=from_status,
                to_status=batch.status,
                details_json={
                    "snapshot_id": str(snapshot_id),
                    "checkpoint_id": str(checkpoint_id),
                    "closed_requests": [str(r) for r in closed],
                },
            )
        )
        await self.session.flush()
        logger.info(
            "Rolled back batch %s to snapshot %s (%s -> %s)",
            batch.batch_number,
            snapshot_id,
            from_status,
            batch.status,
        )
        return batch

    async def _close_open_requests(self, batch: PayrollBatch) -> list[UUID]:
        """Deny unconsumed recalculation requests and free the batch's request slot."""
        result = await self.session.execute(
            select(RecalculationRequest).where(
                RecalculationRequest.batch_id == batch.batch_id,
                RecalculationRequest.status.in_(("pending", "granted")),
                RecalculationRequest.consumed_at.is_(None),
            )
        )
        closed = []
        for request in result.scalars().all():
            request.status = "denied"
            request.decision_reason = "batch rolled back"
            closed.append(request.request_id)
        batch.active_request_id = None
        return closed

    async def _restore_records(self, batch_id: UUID, saved: list[dict[str, Any]]) -> None:
        current = {r.employee_id: r for r in await self._load_records(batch_id)}
        wanted = {UUID(item["employee_id"]): item for item in saved}

        removed = [eid for eid in current if eid not in wanted]
        if removed:
            await self.session.execute(
                delete(EmployeePayrollRecord).where(
                    EmployeePayrollRecord.batch_id == batch_id,
                    EmployeePayrollRecord.employee_id.in_(removed),
                )
            )

        for employee_id, item in wanted.items():
            record = current.get(employee_id)
            if record is None:
                record = EmployeePayrollRecord(
                    record_id=UUID(item["record_id"]),
                    batch_id=batch_id,
                    employee_id=employee_id,
                )
                self.session.add(record)
            record.year = item["year"]
            record.month = item["month"]
            record.sequence = item["sequence"]
            record.row_json = item["row"]
            record.payslip_json = item["payslip"]
            record.warnings_json = item["warnings"]
            record.source_fingerprint = item["source_fingerprint"]
            record.status = item["status"]
            record.failure_reason = item["failure_reason"]
            record.computed_at = datetime.fromisoformat(item["computed_at"])

    async def _load_records(self, batch_id: UUID) -> list[EmployeePayrollRecord]:
        result = await self.session.execute(
            select(EmployeePayrollRecord)
            .where(EmployeePayrollRecord.batch_id == batch_id)
            .order_by(EmployeePayrollRecord.sequence, EmployeePayrollRecord.employee_id)
        )
        return list(result.scalars().all())

    @staticmethod
    def _dump_record(record: EmployeePayrollRecord) -> dict[str, Any]:
        return {
            "record_id": str(record.record_id),
            "employee_id": str(record.employee_id),
            "year": record.year,
            "month": record.month,
            "sequence": record.sequence,
            "row": list(record.row_json),
            "payslip": dict(record.payslip_json),
            "warnings": list(record.warnings_json),
            "source_fingerprint": record.source_fingerprint,
            "status": record.status,
            "failure_reason": record.failure_reason,
            "computed_at": ensure_utc(record.computed_at).isoformat(),
        }
