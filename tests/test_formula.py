"""Tests for the restricted formula language."""

from decimal import Decimal

import pytest

from payroll_batch.calculators.formula import (
    FormulaEvaluationError,
    FormulaSyntaxError,
    compile_formula,
    evaluate_formula,
)


def evaluate(source, **values):
    return evaluate_formula(compile_formula(source), values)


class TestCompile:
    """Test formula compilation."""

    def test_collects_names_but_not_functions(self):
        """Test that referenced names exclude function names."""
        formula = compile_formula("round(min(basic, 15000) * rate) + max(a, b)")
        assert formula.names == frozenset({"basic", "rate", "a", "b"})

    def test_strips_math_prefix(self):
        """Test that a math. prefix on functions is accepted."""
        formula = compile_formula("Math.round(basic / 2)")
        assert formula.names == frozenset({"basic"})

    @pytest.mark.parametrize(
        "source",
        [
            "",
            "basic +",
            "__import__('os')",
            "basic.real",
            "basic[0]",
            "'text'",
            "lambda: 1",
            "open('x')",
            "round(basic, ndigits=2)",
            "[1, 2]",
            "True",
        ],
    )
    def test_rejects_unsupported(self, source):
        """Test that unsupported syntax is rejected."""
        with pytest.raises(FormulaSyntaxError):
            compile_formula(source)


class TestEvaluate:
    """Test formula evaluation."""

    def test_arithmetic_uses_decimal(self):
        """Test that arithmetic is done in Decimal."""
        assert evaluate("a + b", a=Decimal("0.1"), b=Decimal("0.2")) == Decimal("0.3")
        assert evaluate("a * 0.12", a=Decimal("15000")) == Decimal("1800.00")
        assert evaluate("-a + 10 // 3 + 10 % 3 + 2 ** 3", a=1) == Decimal("11")

    def test_functions(self):
        """Test the built-in functions."""
        assert evaluate("min(a, b, 3)", a=5, b=4) == Decimal("3")
        assert evaluate("max(a, b)", a=5, b=4) == Decimal("5")
        assert evaluate("round(a)", a=Decimal("2.5")) == Decimal("3")
        assert evaluate("round(a, 1)", a=Decimal("2.45")) == Decimal("2.5")
        assert evaluate("floor(a)", a=Decimal("-2.5")) == Decimal("-3")
        assert evaluate("ceil(a)", a=Decimal("2.1")) == Decimal("3")
        assert evaluate("abs(a)", a=Decimal("-7")) == Decimal("7")

    def test_conditionals_and_comparisons(self):
        """Test conditional expressions and comparisons."""
        assert evaluate("100 if days > 20 else 0", days=25) == Decimal("100")
        assert evaluate("100 if days > 20 else 0", days=10) == Decimal("0")
        assert evaluate("0 < days <= 31", days=31) == Decimal("1")
        assert evaluate("days > 5 and ot > 0", days=6, ot=0) == Decimal("0")
        assert evaluate("not ot", ot=0) == Decimal("1")

    def test_numeric_strings_are_coerced(self):
        """Test that numeric strings are coerced to Decimal."""
        assert evaluate("a + 1", a="41") == Decimal("42")

    def test_division_by_zero(self):
        """Test that division by zero raises an evaluation error."""
        with pytest.raises(FormulaEvaluationError, match="division by zero"):
            evaluate("a / b", a=1, b=0)

    def test_null_operand(self):
        """Test that an empty operand raises an evaluation error."""
        with pytest.raises(FormulaEvaluationError, match="'hra' is empty"):
            evaluate("basic + hra", basic=1, hra=None)

    def test_non_numeric_operand(self):
        """Test that a non-numeric operand raises an evaluation error."""
        with pytest.raises(FormulaEvaluationError, match="not numeric"):
            evaluate("name + 1", name="Asha")

    def test_unknown_reference(self):
        """Test that an unknown name raises an evaluation error."""
        with pytest.raises(FormulaEvaluationError, match="unknown reference 'bonus'"):
            evaluate("basic + bonus", basic=1)
