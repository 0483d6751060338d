"""Output column calculation engine."""

from payroll_batch.calculators.columns import (
    ColumnConfig,
    FieldColumn,
    FormulaColumn,
    build_config,
    header_to_key,
    parse_columns,
    validate_columns,
)
from payroll_batch.calculators.data_sources import (
    DataSources,
    EmployeeDataSnapshot,
    SqlDataSources,
    get_value_by_path,
)
from payroll_batch.calculators.engine import FormulaEngine
from payroll_batch.calculators.types import BatchRunSummary, CalculationResult

__all__ = [
    "ColumnConfig",
    "FieldColumn",
    "FormulaColumn",
    "build_config",
    "header_to_key",
    "parse_columns",
    "validate_columns",
    "DataSources",
    "EmployeeDataSnapshot",
    "SqlDataSources",
    "get_value_by_path",
    "FormulaEngine",
    "BatchRunSummary",
    "CalculationResult",
]
