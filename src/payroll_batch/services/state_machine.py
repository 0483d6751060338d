"""Payroll batch state machine with transition validation."""

from __future__ import annotations

from enum import Enum

from payroll_batch.exceptions import StateError


class BatchStatus(str, Enum):
    """Payroll batch status values."""

    DRAFT = "draft"
    CALCULATING = "calculating"
    INCOMPLETE = "incomplete"
    CALCULATED = "calculated"
    APPROVED = "approved"
    FROZEN = "frozen"
    COMPLETED = "completed"


class BatchAction(str, Enum):
    """Lifecycle actions that may change a batch's status."""

    CALCULATE = "calculate"
    FINISH = "finish"
    ABORT = "abort"
    APPROVE = "approve"
    FREEZE = "freeze"
    COMPLETE = "complete"
    REQUEST_RECALCULATION = "request recalculation"
    RECALCULATE = "recalculate"
    ROLLBACK = "rollback"


class BatchStateMachine:
    """State machine for payroll batch status transitions.

    Allowed transitions:
    - draft / incomplete → calculating (calculate, resume)
    - calculating → calculated (finish)
    - calculating → incomplete (abort: cancelled or infra failure)
    - calculated → approved
    - approved → frozen
    - approved / frozen → completed
    - approved / frozen → calculating (recalculate, needs a grant)
    - any status except calculating → snapshot status (rollback)
    """

    # {from_status: {action: to_status}}
    TRANSITIONS: dict[str, dict[str, str]] = {
        BatchStatus.DRAFT: {BatchAction.CALCULATE: BatchStatus.CALCULATING},
        BatchStatus.INCOMPLETE: {BatchAction.CALCULATE: BatchStatus.CALCULATING},
        BatchStatus.CALCULATING: {
            BatchAction.FINISH: BatchStatus.CALCULATED,
            BatchAction.ABORT: BatchStatus.INCOMPLETE,
        },
        BatchStatus.CALCULATED: {BatchAction.APPROVE: BatchStatus.APPROVED},
        BatchStatus.APPROVED: {
            BatchAction.FREEZE: BatchStatus.FROZEN,
            BatchAction.COMPLETE: BatchStatus.COMPLETED,
            BatchAction.REQUEST_RECALCULATION: BatchStatus.APPROVED,
            BatchAction.RECALCULATE: BatchStatus.CALCULATING,
        },
        BatchStatus.FROZEN: {
            BatchAction.COMPLETE: BatchStatus.COMPLETED,
            BatchAction.REQUEST_RECALCULATION: BatchStatus.FROZEN,
            BatchAction.RECALCULATE: BatchStatus.CALCULATING,
        },
        BatchStatus.COMPLETED: {},  # Terminal except for rollback
    }

    # Statuses a batch may be deleted in
    DELETABLE = {
        BatchStatus.DRAFT,
        BatchStatus.CALCULATED,
        BatchStatus.INCOMPLETE,
    }

    # Statuses from which a recalculation may be requested
    RECALCULABLE = {
        BatchStatus.APPROVED,
        BatchStatus.FROZEN,
    }

    @classmethod
    def next_status(cls, from_status: str, action: str) -> str:
        """Compute the target status, raising StateError if the action is illegal."""
        action = BatchAction(action)
        if action == BatchAction.ROLLBACK:
            if from_status == BatchStatus.CALCULATING:
                raise StateError(from_status, action.value, "a calculation is in progress")
            return from_status

        target = cls.TRANSITIONS.get(BatchStatus(from_status), {}).get(action)
        if target is None:
            raise StateError(from_status, action.value)
        return BatchStatus(target).value

    @classmethod
    def can_perform(cls, from_status: str, action: str) -> bool:
        """Check if an action is legal in this status."""
        try:
            cls.next_status(from_status, action)
        except StateError:
            return False
        return True

    @classmethod
    def can_delete(cls, status: str) -> bool:
        return BatchStatus(status) in cls.DELETABLE

    @classmethod
    def can_request_recalculation(cls, status: str) -> bool:
        return BatchStatus(status) in cls.RECALCULABLE

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        """Completed batches accept nothing but rollback."""
        return status == BatchStatus.COMPLETED

    @classmethod
    def get_allowed_actions(cls, status: str) -> list[str]:
        """List the actions legal from the current status."""
        actions = [BatchAction(a).value for a in cls.TRANSITIONS.get(BatchStatus(status), {})]
        if status != BatchStatus.CALCULATING:
            actions.append(BatchAction.ROLLBACK.value)
        return actions
