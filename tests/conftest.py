"""Pytest fixtures for payroll batch tests."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import AsyncGenerator
from uuid import UUID

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_batch.config import Settings
from payroll_batch.database import create_schema, get_engine, make_session_factory
from payroll_batch.models import (
    ArrearsSettlement,
    Department,
    Division,
    Employee,
    LeaveRegisterEntry,
    PayRegisterSummary,
)
from payroll_batch.periods import PayPeriod
from payroll_batch.services.config_service import ConfigService

# Fixed ids so failures are easy to read
NORTH_ID = UUID("00000000-0000-0000-0000-00000000d001")
SOUTH_ID = UUID("00000000-0000-0000-0000-00000000d002")
OPS_ID = UUID("00000000-0000-0000-0000-00000000e001")
ADMIN_ID = UUID("00000000-0000-0000-0000-00000000e002")
SALES_ID = UUID("00000000-0000-0000-0000-00000000e003")

ASHA_ID = UUID("00000000-0000-0000-0000-000000000001")
BRUNO_ID = UUID("00000000-0000-0000-0000-000000000002")
CHEN_ID = UUID("00000000-0000-0000-0000-000000000003")
DARA_ID = UUID("00000000-0000-0000-0000-000000000004")
ELI_ID = UUID("00000000-0000-0000-0000-000000000005")
FARAH_ID = UUID("00000000-0000-0000-0000-000000000006")

PREPARER_ID = UUID("00000000-0000-0000-0000-0000000000a1")
APPROVER_ID = UUID("00000000-0000-0000-0000-0000000000a2")

MARCH_2024 = PayPeriod(2024, 3)

COLUMNS = [
    {"kind": "field", "header": "Emp No", "path": "employee.emp_no"},
    {"kind": "field", "header": "Basic Pay", "path": "employee.basic_pay"},
    {"kind": "field", "header": "Payable Days", "path": "pay_register.payable_days"},
    {"kind": "field", "header": "Month Days", "path": "period.days"},
    {
        "kind": "formula",
        "header": "Earned Basic",
        "expr": "basic_pay * payable_days / month_days",
        "bucket": "earning",
    },
    {
        "kind": "field",
        "header": "HRA",
        "path": "pay_register.allowances:HRA",
        "bucket": "earning",
    },
    {"kind": "field", "header": "Arrears", "path": "arrears.total", "bucket": "earning"},
    {
        "kind": "formula",
        "header": "PF",
        "expr": "round(min(earned_basic, 15000) * 0.12)",
        "bucket": "deduction",
    },
    {
        "kind": "formula",
        "header": "Net Pay",
        "expr": "earned_basic + hra + arrears - pf",
        "bucket": "net",
    },
]

TEST_SETTINGS = Settings(
    database_url="sqlite+aiosqlite://",
    engine_version="test",
    worker_pool_size=2,
    checkpoint_every=1,
    pay_cycle_start_day=1,
    recalculation_grant_ttl_hours=24,
    log_level="DEBUG",
)


@dataclass
class Seed:
    """Ids of the seeded master data."""

    north_id: UUID = NORTH_ID
    south_id: UUID = SOUTH_ID
    ops_id: UUID = OPS_ID
    admin_id: UUID = ADMIN_ID
    sales_id: UUID = SALES_ID
    asha_id: UUID = ASHA_ID
    bruno_id: UUID = BRUNO_ID
    chen_id: UUID = CHEN_ID
    dara_id: UUID = DARA_ID
    eli_id: UUID = ELI_ID
    farah_id: UUID = FARAH_ID


@pytest.fixture
def settings() -> Settings:
    return TEST_SETTINGS


@pytest.fixture
async def engine(tmp_path):
    """Create a test database engine backed by a temporary SQLite file."""
    engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'payroll.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
async def seeded(session_factory) -> Seed:
    """Seed divisions, departments, employees and March 2024 upstream data.

    North/Ops:   Asha (E001), Bruno (E002), Dara (E004, left 2024-03-15)
    North/Admin: Chen (E003, no pay register for March)
    North:       Eli (E005, left 2024-01-10)
    South/Sales: Farah (E006)
    """
    async with session_factory() as s:
        s.add_all(
            [
                Division(division_id=NORTH_ID, code="NTH", name="North"),
                Division(division_id=SOUTH_ID, code="STH", name="South"),
            ]
        )
        await s.flush()
        s.add_all(
            [
                Department(department_id=OPS_ID, division_id=NORTH_ID, code="OPS", name="Operations"),
                Department(department_id=ADMIN_ID, division_id=NORTH_ID, code="ADM", name="Admin"),
                Department(department_id=SALES_ID, division_id=SOUTH_ID, code="SAL", name="Sales"),
            ]
        )
        await s.flush()
        s.add_all(
            [
                _employee(ASHA_ID, "E001", "Asha", NORTH_ID, OPS_ID, "30000"),
                _employee(BRUNO_ID, "E002", "Bruno", NORTH_ID, OPS_ID, "24000"),
                _employee(CHEN_ID, "E003", "Chen", NORTH_ID, ADMIN_ID, "18000"),
                _employee(
                    DARA_ID, "E004", "Dara", NORTH_ID, OPS_ID, "21000",
                    left_date=date(2024, 3, 15),
                ),
                _employee(
                    ELI_ID, "E005", "Eli", NORTH_ID, OPS_ID, "20000",
                    left_date=date(2024, 1, 10),
                ),
                _employee(FARAH_ID, "E006", "Farah", SOUTH_ID, SALES_ID, "26000"),
            ]
        )
        await s.flush()
        s.add_all(
            [
                _pay_register(ASHA_ID, payable_days=31, hra=5000),
                _pay_register(BRUNO_ID, payable_days=28, hra=4000),
                _pay_register(DARA_ID, payable_days=15, hra=2000),
                _pay_register(FARAH_ID, payable_days=31, hra=4500),
                ArrearsSettlement(
                    employee_id=ASHA_ID,
                    year=2024,
                    month=3,
                    amount=Decimal("1200.00"),
                    reason="February increment",
                ),
                LeaveRegisterEntry(
                    employee_id=BRUNO_ID,
                    year=2024,
                    month=3,
                    paid_leave_days=Decimal("0"),
                    lop_days=Decimal("3"),
                ),
            ]
        )
        await s.commit()
    return Seed()


@pytest.fixture
async def columns(session_factory, seeded) -> int:
    """Save the standard output column configuration and return its version."""
    async with session_factory() as s:
        config = await ConfigService(s).save_columns(COLUMNS, PREPARER_ID)
        await s.commit()
    return config.version


def _employee(
    employee_id: UUID,
    emp_no: str,
    name: str,
    division_id: UUID,
    department_id: UUID,
    basic_pay: str,
    left_date: date | None = None,
) -> Employee:
    return Employee(
        employee_id=employee_id,
        emp_no=emp_no,
        name=name,
        designation="Engineer",
        division_id=division_id,
        department_id=department_id,
        is_active=left_date is None,
        left_date=left_date,
        basic_pay=Decimal(basic_pay),
        extra_json={"grade": "G2"},
    )


def _pay_register(employee_id: UUID, payable_days: float, hra: int) -> PayRegisterSummary:
    return PayRegisterSummary(
        employee_id=employee_id,
        year=2024,
        month=3,
        version=1,
        totals_json={
            "payable_days": payable_days,
            "present_days": payable_days,
            "allowances": [{"name": "HRA", "amount": hra}],
        },
    )
