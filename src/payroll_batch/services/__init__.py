"""Payroll batch services."""

from payroll_batch.services.state_machine import BatchAction, BatchStateMachine, BatchStatus
from payroll_batch.services.scope_resolver import BatchScope, ScopeResolver
from payroll_batch.services.config_service import ConfigService
from payroll_batch.services.batch_service import (
    BatchFilters,
    BatchService,
    BulkActionResult,
    Discrepancy,
    ValidationReport,
)
from payroll_batch.services.snapshot_store import HistorySnapshotStore
from payroll_batch.services.recalculation import RecalculationCoordinator
from payroll_batch.services.job_runner import CalculationJob, CalculationJobRunner, JobState

__all__ = [
    "BatchAction",
    "BatchStateMachine",
    "BatchStatus",
    "BatchScope",
    "ScopeResolver",
    "ConfigService",
    "BatchFilters",
    "BatchService",
    "BulkActionResult",
    "Discrepancy",
    "ValidationReport",
    "HistorySnapshotStore",
    "RecalculationCoordinator",
    "CalculationJob",
    "CalculationJobRunner",
    "JobState",
]
