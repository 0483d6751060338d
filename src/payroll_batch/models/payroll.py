"""Payroll configuration, batch, record, recalculation and history models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from payroll_batch.models.base import Base, JSONType, TimestampMixin, utcnow


# ===== Configuration =====


class PayrollConfiguration(Base, TimestampMixin):
    """Immutable, versioned output column configuration."""

    __tablename__ = "payroll_configuration"

    config_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    version: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    columns_json: Mapped[list[Any]] = mapped_column(JSONType, nullable=False, default=list)
    created_by: Mapped[UUID | None] = mapped_column(nullable=True)


# ===== Batch & Records =====


BATCH_STATUSES = (
    "draft",
    "calculating",
    "incomplete",
    "calculated",
    "approved",
    "frozen",
    "completed",
)


class PayrollBatch(Base, TimestampMixin):
    """One payroll computation run for a scope and period."""

    __tablename__ = "payroll_batch"

    batch_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    batch_number: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    division_id: Mapped[UUID] = mapped_column(ForeignKey("division.division_id"), nullable=False)
    department_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("department.department_id"),
        nullable=True,
    )
    include_left_employees: Mapped[bool] = mapped_column(default=False, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="draft")
    config_version: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Progress and aggregate results
    total_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    succeeded_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_gross: Mapped[Decimal] = mapped_column(Numeric(16, 2), nullable=False, default=Decimal("0"))
    total_deductions: Mapped[Decimal] = mapped_column(
        Numeric(16, 2), nullable=False, default=Decimal("0")
    )
    total_net: Mapped[Decimal] = mapped_column(Numeric(16, 2), nullable=False, default=Decimal("0"))

    # Lifecycle timestamps and actors
    created_by: Mapped[UUID | None] = mapped_column(nullable=True)
    calculated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    approved_by: Mapped[UUID | None] = mapped_column(nullable=True)
    frozen_at: Mapped[datetime | None] = mapped_column(nullable=True)
    frozen_by: Mapped[UUID | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_by: Mapped[UUID | None] = mapped_column(nullable=True)
    failures_acknowledged_by: Mapped[UUID | None] = mapped_column(nullable=True)

    active_request_id: Mapped[UUID | None] = mapped_column(nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'calculating', 'incomplete', 'calculated', "
            "'approved', 'frozen', 'completed')",
            name="payroll_batch_status_check",
        ),
        CheckConstraint("month BETWEEN 1 AND 12", name="payroll_batch_month_check"),
    )

    @property
    def period_label(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    @property
    def progress_percent(self) -> float:
        if not self.total_count:
            return 100.0 if self.status == "calculated" else 0.0
        return round(100.0 * self.processed_count / self.total_count, 1)


class EmployeePayrollRecord(Base, TimestampMixin):
    """Computed payroll for one employee inside one batch."""

    __tablename__ = "employee_payroll_record"

    record_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    batch_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_batch.batch_id", ondelete="CASCADE"),
        nullable=False,
    )
    employee_id: Mapped[UUID] = mapped_column(ForeignKey("employee.employee_id"), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Ordered [header, value] pairs
    row_json: Mapped[list[Any]] = mapped_column(JSONType, nullable=False, default=list)
    payslip_json: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    warnings_json: Mapped[list[Any]] = mapped_column(JSONType, nullable=False, default=list)
    source_fingerprint: Mapped[str] = mapped_column(String, nullable=False, default="")

    status: Mapped[str] = mapped_column(String, nullable=False, default="ok")
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    computed_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("batch_id", "employee_id", name="employee_payroll_record_unique"),
        CheckConstraint("status IN ('ok', 'failed')", name="employee_payroll_record_status_check"),
    )

    @property
    def row(self) -> dict[str, Any]:
        """Row as an ordered header -> value mapping."""
        return {header: value for header, value in self.row_json}

    @property
    def is_ok(self) -> bool:
        return self.status == "ok"


# ===== Recalculation =====


class RecalculationRequest(Base, TimestampMixin):
    """Two-party authorization for recomputing an approved batch."""

    __tablename__ = "recalculation_request"

    request_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    batch_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_batch.batch_id", ondelete="CASCADE"),
        nullable=False,
    )
    requester_id: Mapped[UUID] = mapped_column(nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    requested_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    granter_id: Mapped[UUID | None] = mapped_column(nullable=True)
    granted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    decision_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    consumed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    consumed_by: Mapped[UUID | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'granted', 'denied')",
            name="recalculation_request_status_check",
        ),
    )

    @property
    def is_active(self) -> bool:
        """Pending, or granted but not yet consumed."""
        if self.status == "pending":
            return True
        return self.status == "granted" and self.consumed_at is None


# ===== History =====


class HistorySnapshot(Base):
    """Append-only, point-in-time copy of a batch and its records."""

    __tablename__ = "history_snapshot"

    snapshot_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    batch_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_batch.batch_id", ondelete="CASCADE"),
        nullable=False,
    )
    captured_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    captured_by: Mapped[UUID | None] = mapped_column(nullable=True)
    trigger: Mapped[str] = mapped_column(String, nullable=False)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "trigger IN ('pre-recalculation', 'pre-rollback-checkpoint')",
            name="history_snapshot_trigger_check",
        ),
    )


# ===== Audit =====


class BatchAuditEvent(Base, TimestampMixin):
    """Audit trail entry for batch lifecycle actions."""

    __tablename__ = "batch_audit_event"

    audit_event_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    batch_id: Mapped[UUID] = mapped_column(nullable=False)
    actor_id: Mapped[UUID | None] = mapped_column(nullable=True)
    action: Mapped[str] = mapped_column(String, nullable=False)
    from_status: Mapped[str | None] = mapped_column(String, nullable=True)
    to_status: Mapped[str | None] = mapped_column(String, nullable=True)
    details_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
