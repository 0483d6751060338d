"""Type definitions for the column calculation pipeline."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any
from uuid import UUID

CENT = Decimal("0.01")


def to_json_value(value: Any) -> Any:
    """Convert a computed value into its stored JSON form.

    Decimals become ints when integral, floats otherwise.
    """
    if isinstance(value, Decimal):
        if value == value.to_integral_value():
            return int(value)
        return float(value)
    if isinstance(value, bool):
        return int(value)
    return value


@dataclass
class CalculationResult:
    """Result of evaluating the output columns for one employee."""

    employee_id: UUID
    row: list[tuple[str, Any]]
    payslip: dict[str, Any]
    warnings: list[dict[str, str]] = field(default_factory=list)
    source_fingerprint: str = ""

    @property
    def has_warnings(self) -> bool:
        return len(self.warnings) > 0

    def row_dict(self) -> dict[str, Any]:
        return dict(self.row)

    def row_json(self) -> list[list[Any]]:
        return [[header, to_json_value(value)] for header, value in self.row]

    def payslip_json(self) -> dict[str, Any]:
        return {
            "gross": to_json_value(self.payslip["gross"]),
            "deductions": to_json_value(self.payslip["deductions"]),
            "net": to_json_value(self.payslip["net"]),
            "components": {
                bucket: [
                    {"header": header, "amount": to_json_value(amount)}
                    for header, amount in items
                ]
                for bucket, items in self.payslip["components"].items()
            },
        }

    def canonical_row(self) -> str:
        """Byte-stable serialization of the row."""
        return json.dumps(self.row_json(), separators=(",", ":"), sort_keys=True)


@dataclass
class BatchRunSummary:
    """Aggregate result of calculating or recalculating a batch."""

    batch_id: UUID
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    total_gross: Decimal = Decimal("0")
    total_deductions: Decimal = Decimal("0")
    total_net: Decimal = Decimal("0")
    failures: dict[UUID, str] = field(default_factory=dict)
