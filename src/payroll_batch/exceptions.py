"""Error taxonomy for payroll batch operations.

Propagation rules:
- ColumnEvaluationWarning is recorded inside the row and never raised
  past the formula engine.
- ComputationError fails one employee record; the batch keeps going.
- StateError / ConcurrencyConflict are raised to the caller with no
  partial effect applied.
- PersistenceError wraps storage failures during calculation checkpoints.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID


class PayrollBatchError(Exception):
    """Base class for all payroll batch errors."""


class ValidationError(PayrollBatchError):
    """Malformed input: bad period, unknown reference, duplicate batch."""


class NotFoundError(ValidationError):
    """A referenced batch, snapshot or request does not exist."""

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class ColumnConfigError(ValidationError):
    """Output column configuration failed validation."""

    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__("Invalid output column configuration: " + "; ".join(problems))


class ScopeResolutionError(PayrollBatchError):
    """Scope references a division/department that cannot be resolved."""


class ComputationError(PayrollBatchError):
    """Record-level failure that makes one employee's record unusable."""

    def __init__(self, employee_id: UUID, reason: str):
        self.employee_id = employee_id
        self.reason = reason
        super().__init__(f"Employee {employee_id}: {reason}")


class ColumnEvaluationWarning(UserWarning):
    """Non-fatal problem evaluating one output column."""

    def __init__(self, header: str, message: str):
        self.header = header
        self.message = message
        super().__init__(f"{header}: {message}")

    def to_dict(self) -> dict[str, str]:
        return {"column": self.header, "message": self.message}


class StateError(PayrollBatchError):
    """Raised when an illegal lifecycle transition is attempted."""

    def __init__(self, from_status: str | None, action: str, reason: str | None = None):
        self.from_status = from_status
        self.action = action
        self.reason = reason
        msg = f"Cannot {action} batch in status '{from_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ConcurrencyConflict(PayrollBatchError):
    """A compare-and-swap guard found the row changed underneath us."""

    def __init__(self, entity_id: UUID | str, expected: str, detail: str | None = None):
        self.entity_id = entity_id
        self.expected = expected
        msg = f"Concurrent modification of {entity_id} (expected '{expected}')"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class PersistenceError(PayrollBatchError):
    """Storage-layer failure."""
