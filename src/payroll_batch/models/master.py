"""Master data consumed by payroll computation.

These tables are owned by upstream systems (employee master, attendance
pay register, leave register, arrears settlements). The batch engine only
reads them.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    Date,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from payroll_batch.models.base import Base, JSONType, TimestampMixin


class Division(Base, TimestampMixin):
    """Organisational division."""

    __tablename__ = "division"

    division_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String, nullable=False)


class Department(Base, TimestampMixin):
    """Department inside a division."""

    __tablename__ = "department"

    department_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    division_id: Mapped[UUID] = mapped_column(
        ForeignKey("division.division_id", ondelete="CASCADE"),
        nullable=False,
    )
    code: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("division_id", "code", name="department_division_code_unique"),
    )


class Employee(Base, TimestampMixin):
    """Employee master record."""

    __tablename__ = "employee"

    employee_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    emp_no: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    designation: Mapped[str | None] = mapped_column(String, nullable=True)
    division_id: Mapped[UUID] = mapped_column(
        ForeignKey("division.division_id"),
        nullable=False,
    )
    department_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("department.department_id"),
        nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)
    left_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    basic_pay: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0")
    )
    extra_json: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    def to_source_dict(self) -> dict[str, Any]:
        """Field-lookup view of the employee (``employee.*`` paths)."""
        data: dict[str, Any] = dict(self.extra_json or {})
        data.update(
            {
                "emp_no": self.emp_no,
                "name": self.name,
                "designation": self.designation,
                "basic_pay": self.basic_pay,
                "is_active": self.is_active,
                "left_date": self.left_date.isoformat() if self.left_date else None,
            }
        )
        return data


class PayRegisterSummary(Base, TimestampMixin):
    """Attendance-derived pay register totals for one employee and month."""

    __tablename__ = "pay_register_summary"

    pay_register_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"),
        nullable=False,
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    totals_json: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint("employee_id", "year", "month", name="pay_register_employee_month_unique"),
        CheckConstraint("month BETWEEN 1 AND 12", name="pay_register_month_check"),
    )


class LeaveRegisterEntry(Base, TimestampMixin):
    """Leave register adjustments for one employee and month."""

    __tablename__ = "leave_register_entry"

    leave_entry_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"),
        nullable=False,
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    paid_leave_days: Mapped[Decimal] = mapped_column(
        Numeric(6, 2), nullable=False, default=Decimal("0")
    )
    lop_days: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False, default=Decimal("0"))

    __table_args__ = (
        UniqueConstraint("employee_id", "year", "month", name="leave_register_employee_month_unique"),
    )


class ArrearsSettlement(Base, TimestampMixin):
    """Arrears amount settled into a given payroll month."""

    __tablename__ = "arrears_settlement"

    arrears_settlement_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"),
        nullable=False,
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    reason: Mapped[str | None] = mapped_column(String, nullable=True)
