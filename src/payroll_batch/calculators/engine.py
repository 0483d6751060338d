"""Formula evaluation engine - computes one employee's row and payslip."""

from __future__ import annotations

import hashlib
import json
import logging
from decimal import ROUND_HALF_UP, Decimal, DecimalException
from typing import Any, Callable
from uuid import UUID

from payroll_batch.calculators.columns import ColumnConfig, FieldColumn, FormulaColumn
from payroll_batch.calculators.data_sources import (
    DataSources,
    EmployeeDataSnapshot,
    get_value_by_path,
)
from payroll_batch.calculators.formula import (
    FormulaEvaluationError,
    FormulaSyntaxError,
    compile_formula,
    evaluate_formula,
)
from payroll_batch.calculators.types import CENT, CalculationResult
from payroll_batch.config import get_settings
from payroll_batch.exceptions import ColumnEvaluationWarning, ComputationError
from payroll_batch.periods import PayPeriod

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class FormulaEngine:
    """Evaluates ordered output columns for an employee.

    Pipeline (one linear pass, config order):
    1) field column -> look up path in the employee's data snapshot
    2) formula column -> evaluate against the columns computed so far
    3) derive payslip (gross / deductions / net) from column buckets
    4) fingerprint the upstream inputs
    """

    def __init__(self, engine_version: str | None = None):
        self.engine_version = engine_version or get_settings().engine_version
        self._dispatch: dict[str, Callable[..., Any]] = {
            "field": self._evaluate_field,
            "formula": self._evaluate_formula,
        }

    async def evaluate(
        self,
        config: ColumnConfig,
        employee_id: UUID,
        period: PayPeriod,
        data_sources: DataSources,
    ) -> CalculationResult:
        """Compute one employee's record.

        Raises ComputationError when the upstream data makes the record
        unusable (employee or pay register missing).
        """
        snapshot = await data_sources.load(employee_id, period)
        return self.evaluate_snapshot(config, snapshot)

    def evaluate_snapshot(
        self, config: ColumnConfig, snapshot: EmployeeDataSnapshot
    ) -> CalculationResult:
        """Compute a row from already loaded inputs."""
        tree = snapshot.source_tree()
        row: list[tuple[str, Any]] = []
        values: dict[str, Any] = {}
        warnings: list[ColumnEvaluationWarning] = []

        for column in config.columns:
            try:
                value = self._dispatch[column.kind](column, tree, values)
            except ColumnEvaluationWarning as w:
                logger.debug("Column warning for %s: %s", snapshot.employee_id, w)
                warnings.append(w)
                value = None
            row.append((column.header, value))
            values[column.key] = value

        try:
            payslip = self.build_payslip(config, row)
        except DecimalException as e:
            raise ComputationError(snapshot.employee_id, "payslip totals out of range") from e

        return CalculationResult(
            employee_id=snapshot.employee_id,
            row=row,
            payslip=payslip,
            warnings=[w.to_dict() for w in warnings],
            source_fingerprint=self.compute_fingerprint(snapshot, config.version),
        )

    def _evaluate_field(
        self, column: FieldColumn, tree: dict[str, Any], values: dict[str, Any]
    ) -> Any:
        try:
            value = _normalize_value(get_value_by_path(tree, column.path))
        except DecimalException as e:
            raise ColumnEvaluationWarning(column.header, "value out of range") from e
        if isinstance(value, Decimal) and not value.is_finite():
            raise ColumnEvaluationWarning(column.header, "value is not a finite number")
        return value

    def _evaluate_formula(
        self, column: FormulaColumn, tree: dict[str, Any], values: dict[str, Any]
    ) -> Decimal:
        try:
            formula = compile_formula(column.expr)
            return evaluate_formula(formula, values).quantize(CENT, rounding=ROUND_HALF_UP)
        except (FormulaSyntaxError, FormulaEvaluationError) as e:
            raise ColumnEvaluationWarning(column.header, str(e)) from e
        except DecimalException as e:
            raise ColumnEvaluationWarning(column.header, "result out of range") from e

    def build_payslip(
        self, config: ColumnConfig, row: list[tuple[str, Any]]
    ) -> dict[str, Any]:
        """Group columns into earnings, deductions and net by bucket."""
        earnings: list[tuple[str, Decimal]] = []
        deductions: list[tuple[str, Decimal]] = []
        net: Decimal | None = None

        for column, (header, value) in zip(config.columns, row):
            amount = value if isinstance(value, Decimal) else None
            if column.bucket == "earning" and amount is not None:
                earnings.append((header, amount))
            elif column.bucket == "deduction" and amount is not None:
                deductions.append((header, amount))
            elif column.bucket == "net" and amount is not None:
                net = amount

        gross = sum((a for _, a in earnings), ZERO)
        total_deductions = sum((a for _, a in deductions), ZERO)
        if net is None:
            net = gross - total_deductions

        return {
            "gross": gross.quantize(CENT),
            "deductions": total_deductions.quantize(CENT),
            "net": net.quantize(CENT),
            "components": {"earnings": earnings, "deductions": deductions},
        }

    def compute_fingerprint(self, snapshot: EmployeeDataSnapshot, config_version: int) -> str:
        """Compute fingerprint of all upstream inputs used in calculation."""
        data = {
            "inputs": snapshot.fingerprint_inputs(),
            "config_version": config_version,
            "engine_version": self.engine_version,
        }
        json_str = json.dumps(data, sort_keys=True, default=str)
        return hashlib.sha256(json_str.encode()).hexdigest()[:32]


def _normalize_value(value: Any) -> Any:
    """Numbers become 2dp Decimals; strings pass through; anything else is stringified."""
    if value is None:
        return None
    if isinstance(value, bool):
        return Decimal(int(value))
    if isinstance(value, (int, float, Decimal)):
        return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    if isinstance(value, str):
        return value
    return str(value)
