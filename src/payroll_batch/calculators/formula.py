"""Restricted arithmetic formula language for output columns.

Formulas are parsed with :mod:`ast` and interpreted directly; nothing is
passed to ``eval``. Supported:

- numbers, names (keys of earlier columns)
- ``+ - * / // % **``, unary ``-``/``+``/``not``
- comparisons, ``and``/``or``, ``a if cond else b``
- ``min``, ``max``, ``round``, ``floor``, ``ceil``, ``abs``

All arithmetic is done in :class:`~decimal.Decimal`. Comparisons and
boolean operators yield ``1`` or ``0``.
"""

from __future__ import annotations

import ast
import operator
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal, DecimalException
from functools import lru_cache
from typing import Any, Callable, Mapping

ALLOWED_FUNCTIONS = frozenset({"min", "max", "round", "floor", "ceil", "abs"})

_ALLOWED_NODES = (
    ast.Expression,
    ast.BinOp,
    ast.UnaryOp,
    ast.BoolOp,
    ast.Compare,
    ast.IfExp,
    ast.Call,
    ast.Name,
    ast.Load,
    ast.Constant,
    ast.Add,
    ast.Sub,
    ast.Mult,
    ast.Div,
    ast.FloorDiv,
    ast.Mod,
    ast.Pow,
    ast.USub,
    ast.UAdd,
    ast.Not,
    ast.And,
    ast.Or,
    ast.Eq,
    ast.NotEq,
    ast.Lt,
    ast.LtE,
    ast.Gt,
    ast.GtE,
)

_BIN_OPS: dict[type, Callable[[Decimal, Decimal], Decimal]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_COMPARE_OPS: dict[type, Callable[[Decimal, Decimal], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}

ONE = Decimal("1")
ZERO = Decimal("0")


class FormulaSyntaxError(ValueError):
    """Formula is not valid in the restricted language."""


class FormulaEvaluationError(ArithmeticError):
    """Formula could not be evaluated against the given values."""


@dataclass(frozen=True)
class Formula:
    """A parsed, validated formula."""

    source: str
    tree: ast.Expression
    names: frozenset[str]


def _normalize(source: str) -> str:
    # Older configurations were written against JavaScript's Math object
    return source.strip().replace("Math.", "")


@lru_cache(maxsize=1024)
def compile_formula(source: str) -> Formula:
    """Parse and validate a formula expression."""
    text = _normalize(source or "")
    if not text:
        raise FormulaSyntaxError("Formula is empty")
    try:
        tree = ast.parse(text, mode="eval")
    except SyntaxError as e:
        raise FormulaSyntaxError(f"Invalid formula '{source}': {e.msg}") from e

    names: set[str] = set()
    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise FormulaSyntaxError(
                f"Unsupported element '{type(node).__name__}' in formula '{source}'"
            )
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in ALLOWED_FUNCTIONS:
                raise FormulaSyntaxError(f"Unsupported function call in formula '{source}'")
            if node.keywords:
                raise FormulaSyntaxError(f"Keyword arguments not allowed in formula '{source}'")
        elif isinstance(node, ast.Constant):
            if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
                raise FormulaSyntaxError(f"Only numeric literals allowed in formula '{source}'")
        elif isinstance(node, ast.Name):
            names.add(node.id)

    # Function names are not column references
    call_names = {
        node.func.id
        for node in ast.walk(tree)
        if isinstance(node, ast.Call) and isinstance(node.func, ast.Name)
    }
    names -= call_names
    return Formula(source=source, tree=tree, names=frozenset(names))


def to_decimal(value: Any, name: str = "value") -> Decimal:
    """Coerce a column value to Decimal or raise FormulaEvaluationError."""
    if value is None:
        raise FormulaEvaluationError(f"'{name}' is empty")
    if isinstance(value, bool):
        return ONE if value else ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except DecimalException:
            raise FormulaEvaluationError(f"'{name}' is not numeric ({value!r})") from None
    raise FormulaEvaluationError(f"'{name}' is not numeric ({type(value).__name__})")


def evaluate_formula(formula: Formula, values: Mapping[str, Any]) -> Decimal:
    """Evaluate a compiled formula against a mapping of column key -> value."""
    try:
        result = _Evaluator(values).visit(formula.tree.body)
    except ZeroDivisionError:
        raise FormulaEvaluationError("division by zero") from None
    except DecimalException as e:
        raise FormulaEvaluationError(f"invalid arithmetic ({type(e).__name__})") from None
    if not result.is_finite():
        raise FormulaEvaluationError("result is not a finite number")
    return result


class _Evaluator:
    def __init__(self, values: Mapping[str, Any]):
        self.values = values

    def visit(self, node: ast.AST) -> Decimal:
        method = getattr(self, f"visit_{type(node).__name__}", None)
        if method is None:
            raise FormulaEvaluationError(f"unsupported element {type(node).__name__}")
        return method(node)

    def visit_Constant(self, node: ast.Constant) -> Decimal:
        return to_decimal(node.value)

    def visit_Name(self, node: ast.Name) -> Decimal:
        if node.id not in self.values:
            raise FormulaEvaluationError(f"unknown reference '{node.id}'")
        return to_decimal(self.values[node.id], node.id)

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Decimal:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return operand
        return ZERO if operand else ONE

    def visit_BinOp(self, node: ast.BinOp) -> Decimal:
        left = self.visit(node.left)
        right = self.visit(node.right)
        if isinstance(node.op, (ast.Div, ast.FloorDiv, ast.Mod)) and right == 0:
            raise ZeroDivisionError
        return _BIN_OPS[type(node.op)](left, right)

    def visit_Compare(self, node: ast.Compare) -> Decimal:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            if not _COMPARE_OPS[type(op)](left, right):
                return ZERO
            left = right
        return ONE

    def visit_BoolOp(self, node: ast.BoolOp) -> Decimal:
        if isinstance(node.op, ast.And):
            for value in node.values:
                result = self.visit(value)
                if not result:
                    return result
            return result
        for value in node.values:
            result = self.visit(value)
            if result:
                return result
        return result

    def visit_IfExp(self, node: ast.IfExp) -> Decimal:
        if self.visit(node.test):
            return self.visit(node.body)
        return self.visit(node.orelse)

    def visit_Call(self, node: ast.Call) -> Decimal:
        name = node.func.id  # type: ignore[attr-defined]
        args = [self.visit(arg) for arg in node.args]
        if name in ("min", "max"):
            if not args:
                raise FormulaEvaluationError(f"{name}() needs at least one argument")
            return min(args) if name == "min" else max(args)
        if len(args) not in (1, 2) or (len(args) == 2 and name != "round"):
            raise FormulaEvaluationError(f"wrong number of arguments to {name}()")
        value = args[0]
        if name == "abs":
            return abs(value)
        if name == "floor":
            return value.to_integral_value(rounding=ROUND_FLOOR)
        if name == "ceil":
            return value.to_integral_value(rounding=ROUND_CEILING)
        places = int(args[1]) if len(args) == 2 else 0
        return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)
