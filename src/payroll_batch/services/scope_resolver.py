"""Employee scope resolution for a payroll batch."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_batch.exceptions import ScopeResolutionError
from payroll_batch.models import Department, Division, Employee
from payroll_batch.periods import PayPeriod

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchScope:
    """Which employees a batch covers."""

    division_id: UUID
    department_id: UUID | None = None
    include_left_employees: bool = False


class ScopeResolver:
    """Resolves a scope and period into an ordered list of employee ids."""

    def __init__(self, session: AsyncSession, cycle_start_day: int = 1):
        self.session = session
        self.cycle_start_day = cycle_start_day

    async def resolve(self, scope: BatchScope, period: PayPeriod) -> list[UUID]:
        """Return employee ids in scope, ordered by emp_no then id.

        Employees flagged active are always included, even with a future
        left date. Inactive employees are included only when the scope asks
        for leavers and their left date falls inside the period's date range.
        """
        await self.check_scope(scope)

        active = Employee.is_active.is_(True)
        if scope.include_left_employees:
            start, end = period.date_range(self.cycle_start_day)
            left_in_period = and_(
                Employee.left_date.is_not(None),
                Employee.left_date >= start,
                Employee.left_date <= end,
            )
            membership = or_(active, left_in_period)
        else:
            membership = active

        query = select(Employee.employee_id).where(
            Employee.division_id == scope.division_id,
            membership,
        )
        if scope.department_id is not None:
            query = query.where(Employee.department_id == scope.department_id)
        query = query.order_by(Employee.emp_no, Employee.employee_id)

        result = await self.session.execute(query)
        employee_ids = list(result.scalars().all())
        logger.debug(
            "Resolved %d employees for division %s period %s",
            len(employee_ids),
            scope.division_id,
            period,
        )
        return employee_ids

    async def check_scope(self, scope: BatchScope) -> tuple[Division, Department | None]:
        """Load the scope's division and department, raising ScopeResolutionError."""
        division = await self.session.get(Division, scope.division_id)
        if division is None:
            raise ScopeResolutionError(f"Unknown division {scope.division_id}")

        if scope.department_id is None:
            return division, None
        department = await self.session.get(Department, scope.department_id)
        if department is None:
            raise ScopeResolutionError(f"Unknown department {scope.department_id}")
        if department.division_id != scope.division_id:
            raise ScopeResolutionError(
                f"Department {department.code} does not belong to division {division.code}"
            )
        return division, department
