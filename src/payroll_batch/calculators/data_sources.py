"""Upstream data lookups for field columns.

Field paths are dotted and start with a namespace:

- ``employee.*``      master data (emp_no, name, basic_pay, division, ...)
- ``pay_register.*``  attendance-derived pay register totals for the period
- ``attendance.*``    alias of ``pay_register.*``
- ``leave.*``         leave register (paid_leave_days, lop_days)
- ``arrears.*``       settled arrears (total, count)
- ``period.*``        year, month, days, start, end

``path:Name`` selects the item of a list whose ``name`` or ``code`` is
``Name`` and returns its ``amount`` (``pay_register.allowances:HRA``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_batch.exceptions import ComputationError
from payroll_batch.models import (
    ArrearsSettlement,
    Department,
    Division,
    Employee,
    LeaveRegisterEntry,
    PayRegisterSummary,
)
from payroll_batch.periods import PayPeriod


@dataclass(frozen=True)
class EmployeeDataSnapshot:
    """Everything the formula engine may read for one employee and period."""

    employee_id: UUID
    employee: dict[str, Any]
    pay_register: dict[str, Any]
    pay_register_ref: dict[str, Any]
    leave: dict[str, Any] = field(default_factory=dict)
    arrears: list[dict[str, Any]] = field(default_factory=list)
    period: dict[str, Any] = field(default_factory=dict)

    def source_tree(self) -> dict[str, Any]:
        arrears_total = sum((Decimal(str(a["amount"])) for a in self.arrears), Decimal("0"))
        return {
            "employee": self.employee,
            "pay_register": self.pay_register,
            "attendance": self.pay_register,
            "leave": self.leave,
            "arrears": {
                "total": arrears_total,
                "count": len(self.arrears),
                "items": self.arrears,
            },
            "period": self.period,
        }

    def fingerprint_inputs(self) -> dict[str, Any]:
        """Upstream identity used to detect stale records."""
        return {
            "pay_register": self.pay_register_ref,
            "arrears": sorted(
                ({"id": str(a["id"]), "amount": str(a["amount"])} for a in self.arrears),
                key=lambda a: a["id"],
            ),
            "leave": {k: str(v) for k, v in sorted(self.leave.items())},
            "employee": {
                "basic_pay": str(self.employee.get("basic_pay")),
                "division": self.employee.get("division"),
                "department": self.employee.get("department"),
            },
        }


def get_value_by_path(tree: dict[str, Any], path: str) -> Any:
    """Resolve a field path, returning None for anything missing."""
    if not path or not isinstance(path, str):
        return None
    path = path.strip()
    base, _, list_key = path.partition(":")
    value: Any = tree
    for part in filter(None, base.strip().split(".")):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
        if value is None:
            return None

    if list_key:
        if not isinstance(value, list):
            return None
        wanted = list_key.strip()
        for item in value:
            if not isinstance(item, dict):
                continue
            if str(item.get("name", "")).strip() == wanted or str(item.get("code", "")).strip() == wanted:
                return item.get("amount")
        return None

    if isinstance(value, (dict, list)):
        return None
    return value


class DataSources(Protocol):
    """Loads the per-employee inputs for a computation."""

    async def load(self, employee_id: UUID, period: PayPeriod) -> EmployeeDataSnapshot:
        """Load inputs, raising ComputationError when the record cannot be computed."""
        ...


class SqlDataSources:
    """DataSources backed by the master-data tables."""

    def __init__(self, session: AsyncSession, cycle_start_day: int = 1):
        self.session = session
        self.cycle_start_day = cycle_start_day
        self._labels: dict[UUID, str] = {}

    async def load(self, employee_id: UUID, period: PayPeriod) -> EmployeeDataSnapshot:
        employee = await self.session.get(Employee, employee_id)
        if employee is None:
            raise ComputationError(employee_id, "employee not found")

        pay_register = await self._get_pay_register(employee_id, period)
        if pay_register is None:
            raise ComputationError(employee_id, f"no pay register for {period}")

        employee_data = employee.to_source_dict()
        employee_data["division"] = await self._label(Division, employee.division_id)
        if employee.department_id is not None:
            employee_data["department"] = await self._label(Department, employee.department_id)

        start, end = period.date_range(self.cycle_start_day)
        return EmployeeDataSnapshot(
            employee_id=employee_id,
            employee=employee_data,
            pay_register=dict(pay_register.totals_json or {}),
            pay_register_ref={
                "id": str(pay_register.pay_register_id),
                "version": pay_register.version,
            },
            leave=await self._get_leave(employee_id, period),
            arrears=await self._get_arrears(employee_id, period),
            period={
                "year": period.year,
                "month": period.month,
                "days": period.total_days(self.cycle_start_day),
                "start": start.isoformat(),
                "end": end.isoformat(),
            },
        )

    async def _label(self, model: type[Division] | type[Department], key: UUID) -> str | None:
        if key not in self._labels:
            entity = await self.session.get(model, key)
            self._labels[key] = entity.name if entity is not None else None
        return self._labels[key]

    async def _get_pay_register(
        self, employee_id: UUID, period: PayPeriod
    ) -> PayRegisterSummary | None:
        result = await self.session.execute(
            select(PayRegisterSummary).where(
                PayRegisterSummary.employee_id == employee_id,
                PayRegisterSummary.year == period.year,
                PayRegisterSummary.month == period.month,
            )
        )
        return result.scalar_one_or_none()

    async def _get_leave(self, employee_id: UUID, period: PayPeriod) -> dict[str, Any]:
        result = await self.session.execute(
            select(LeaveRegisterEntry).where(
                LeaveRegisterEntry.employee_id == employee_id,
                LeaveRegisterEntry.year == period.year,
                LeaveRegisterEntry.month == period.month,
            )
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            return {}
        return {"paid_leave_days": entry.paid_leave_days, "lop_days": entry.lop_days}

    async def _get_arrears(self, employee_id: UUID, period: PayPeriod) -> list[dict[str, Any]]:
        result = await self.session.execute(
            select(ArrearsSettlement)
            .where(
                ArrearsSettlement.employee_id == employee_id,
                ArrearsSettlement.year == period.year,
                ArrearsSettlement.month == period.month,
            )
            .order_by(ArrearsSettlement.arrears_settlement_id)
        )
        return [
            {"id": a.arrears_settlement_id, "amount": a.amount, "reason": a.reason}
            for a in result.scalars().all()
        ]
