"""SQLAlchemy ORM models."""

from payroll_batch.models.base import Base, TimestampMixin
from payroll_batch.models.master import (
    ArrearsSettlement,
    Department,
    Division,
    Employee,
    LeaveRegisterEntry,
    PayRegisterSummary,
)
from payroll_batch.models.payroll import (
    BATCH_STATUSES,
    BatchAuditEvent,
    EmployeePayrollRecord,
    HistorySnapshot,
    PayrollBatch,
    PayrollConfiguration,
    RecalculationRequest,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "ArrearsSettlement",
    "Department",
    "Division",
    "Employee",
    "LeaveRegisterEntry",
    "PayRegisterSummary",
    "BATCH_STATUSES",
    "BatchAuditEvent",
    "EmployeePayrollRecord",
    "HistorySnapshot",
    "PayrollBatch",
    "PayrollConfiguration",
    "RecalculationRequest",
]
