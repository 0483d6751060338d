"""Output column configuration: tagged column variants and save-time validation.

A column is either a field lookup or a formula. Formulas may reference only
columns that appear earlier in the list, so evaluation is a single linear
pass and cycles are impossible by construction. The ordering rule is
enforced here, when a configuration is saved, not during evaluation.
"""

from __future__ import annotations

import re
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from payroll_batch.calculators.formula import FormulaSyntaxError, compile_formula
from payroll_batch.exceptions import ColumnConfigError

ColumnBucket = Literal["earning", "deduction", "net", "info"]

_NON_KEY_CHARS = re.compile(r"[^a-z0-9_]")
_WHITESPACE = re.compile(r"\s+")


def header_to_key(header: str) -> str:
    """Derive the formula variable name for a column header.

    "Basic Pay" -> "basic_pay", "H.R.A (%)" -> "hra_"
    """
    key = _WHITESPACE.sub("_", (header or "").strip().lower())
    return _NON_KEY_CHARS.sub("", key) or "col"


class _ColumnBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    header: str = Field(min_length=1)
    bucket: ColumnBucket = "info"

    @field_validator("header")
    @classmethod
    def _strip_header(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("header must not be blank")
        return value

    @property
    def key(self) -> str:
        return header_to_key(self.header)


class FieldColumn(_ColumnBase):
    """Value looked up from a data source path (``pay_register.present_days``)."""

    kind: Literal["field"] = "field"
    path: str = Field(min_length=1)


class FormulaColumn(_ColumnBase):
    """Value computed from earlier columns (``basic_pay * present_days / 30``)."""

    kind: Literal["formula"] = "formula"
    expr: str = Field(min_length=1)


OutputColumn = Annotated[Union[FieldColumn, FormulaColumn], Field(discriminator="kind")]

_columns_adapter = TypeAdapter(list[OutputColumn])


class ColumnConfig(BaseModel):
    """Immutable, versioned snapshot of the output columns used for one run."""

    model_config = ConfigDict(frozen=True)

    version: int = 0
    columns: tuple[OutputColumn, ...] = ()

    @property
    def headers(self) -> list[str]:
        return [c.header for c in self.columns]

    def to_payload(self) -> list[dict[str, Any]]:
        return [c.model_dump() for c in self.columns]


def _normalize_legacy(item: dict[str, Any], index: int) -> dict[str, Any]:
    """Accept ``{header, source, field, formula, order}`` style entries."""
    if "kind" in item:
        return item
    formula = str(item.get("formula") or "").strip()
    header = str(item.get("header") or "").strip() or f"Column {index + 1}"
    normalized: dict[str, Any] = {"header": header, "bucket": item.get("bucket", "info")}
    if item.get("source") == "formula" or formula:
        normalized.update(kind="formula", expr=formula)
    else:
        normalized.update(kind="field", path=str(item.get("field") or item.get("path") or ""))
    return normalized


def parse_columns(payload: list[dict[str, Any]]) -> list[FieldColumn | FormulaColumn]:
    """Parse raw column dicts into tagged column models.

    Entries carrying an ``order`` key are sorted by it (stable).
    """
    if not isinstance(payload, list):
        raise ColumnConfigError(["columns must be a list"])
    items = [dict(item) for item in payload]
    if any("order" in item for item in items):
        items = sorted(items, key=lambda item: item.get("order", 0))
    items = [_normalize_legacy({k: v for k, v in item.items() if k != "order"}, i) for i, item in enumerate(items)]
    try:
        return _columns_adapter.validate_python(items)
    except PydanticValidationError as e:
        problems = [
            f"column {err['loc'][0] + 1 if err['loc'] else '?'}: {err['msg']}"
            for err in e.errors()
        ]
        raise ColumnConfigError(problems) from e


def validate_columns(columns: list[FieldColumn | FormulaColumn] | tuple[Any, ...]) -> None:
    """Validate column ordering and formulas, raising ColumnConfigError.

    Rules:
    - header keys are unique
    - every formula parses in the restricted language
    - a formula references only keys of columns strictly before it
    """
    problems: list[str] = []
    first_position: dict[str, int] = {}
    for position, column in enumerate(columns):
        first_position.setdefault(column.key, position)

    seen: set[str] = set()
    for position, column in enumerate(columns):
        label = f"column {position + 1} '{column.header}'"
        if column.key in seen:
            problems.append(f"{label}: duplicate column key '{column.key}'")
        seen.add(column.key)

        if not isinstance(column, FormulaColumn):
            continue
        try:
            formula = compile_formula(column.expr)
        except FormulaSyntaxError as e:
            problems.append(f"{label}: {e}")
            continue

        for name in sorted(formula.names):
            referenced = first_position.get(name)
            if referenced is None:
                problems.append(f"{label}: unknown reference '{name}'")
            elif referenced >= position:
                problems.append(
                    f"{label}: references '{name}' which is not an earlier column"
                )

    if problems:
        raise ColumnConfigError(problems)


def build_config(payload: list[dict[str, Any]], version: int = 0) -> ColumnConfig:
    """Parse and validate a payload into a ColumnConfig."""
    columns = parse_columns(payload)
    validate_columns(columns)
    return ColumnConfig(version=version, columns=tuple(columns))
