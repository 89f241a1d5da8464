"""Reward formula evaluator: arithmetic, whitelist and rejection of anything else."""

from __future__ import annotations

from decimal import Decimal

import pytest

from bodydfi.errors import FormulaError
from bodydfi.rewards.formula import evaluate_formula, formula_variables, numeric_fields, parse_formula


class TestArithmetic:
    def test_payload_variables(self):
        assert evaluate_formula("steps / 1000 * 2", {"steps": 5000}) == Decimal("10")

    def test_precedence(self):
        assert evaluate_formula("2 + 3 * 4", {}) == Decimal("14")
        assert evaluate_formula("(2 + 3) * 4", {}) == Decimal("20")
        assert evaluate_formula("10 - 4 - 3", {}) == Decimal("3")
        assert evaluate_formula("24 / 4 / 2", {}) == Decimal("3")

    def test_unary_minus(self):
        assert evaluate_formula("-3 + 5", {}) == Decimal("2")
        assert evaluate_formula("--2", {}) == Decimal("2")

    def test_decimal_literals(self):
        assert evaluate_formula("0.1 + 0.2", {}) == Decimal("0.3")
        assert evaluate_formula(".5 * 4", {}) == Decimal("2.0")

    def test_float_payload_values(self):
        assert evaluate_formula("hours * 2", {"hours": 1.5}) == Decimal("3.0")


class TestFunctions:
    def test_min_max_are_variadic(self):
        assert evaluate_formula("min(steps / 100, 50)", {"steps": 10000}) == Decimal("50")
        assert evaluate_formula("max(1, 7, 3)", {}) == Decimal("7")

    def test_math_prefix_alias(self):
        assert evaluate_formula("Math.min(dataPointsCount * 0.1, 10)", {"dataPointsCount": 40}) == Decimal("4.0")
        assert evaluate_formula("Math.floor(2.7)", {}) == Decimal("2")

    def test_rounding_functions(self):
        assert evaluate_formula("floor(2.7)", {}) == Decimal("2")
        assert evaluate_formula("ceil(2.1)", {}) == Decimal("3")
        assert evaluate_formula("round(2.5)", {}) == Decimal("3")
        assert evaluate_formula("round(2.4)", {}) == Decimal("2")
        assert evaluate_formula("floor(-2.5)", {}) == Decimal("-3")

    def test_single_argument_functions_check_arity(self):
        with pytest.raises(FormulaError):
            evaluate_formula("floor(1, 2)", {})


class TestRejections:
    @pytest.mark.parametrize(
        "formula",
        [
            "__import__('os')",
            "exec(1)",
            "process.exit(1)",
            "Math.pow(2, 3)",
            "constructor.constructor('x')()",
        ],
    )
    def test_non_whitelisted_calls(self, formula):
        with pytest.raises(FormulaError):
            evaluate_formula(formula, {})

    @pytest.mark.parametrize("formula", ["", "   ", "1 +", "(1", "1 2", "1; 2", "a[0]", "2 ** 3", "x = 1"])
    def test_syntax_errors(self, formula):
        with pytest.raises(FormulaError):
            evaluate_formula(formula, {"a": 1, "x": 1})

    def test_unknown_identifier(self):
        with pytest.raises(FormulaError, match="bonus"):
            evaluate_formula("steps * bonus", {"steps": 1})

    def test_non_numeric_payload_keys_are_not_variables(self):
        with pytest.raises(FormulaError):
            evaluate_formula("name + 1", {"name": "alice"})

    def test_booleans_are_not_numbers(self):
        with pytest.raises(FormulaError):
            evaluate_formula("verified * 10", {"verified": True})

    def test_dotted_payload_paths_are_rejected(self):
        with pytest.raises(FormulaError):
            evaluate_formula("device.steps + 1", {"device": {"steps": 3}})

    def test_division_by_zero(self):
        with pytest.raises(FormulaError, match="Division by zero"):
            evaluate_formula("steps / zero", {"steps": 10, "zero": 0})

    def test_overlong_formula(self):
        with pytest.raises(FormulaError):
            parse_formula("1+" * 300 + "1")


class TestIntrospection:
    def test_formula_variables(self):
        assert formula_variables(parse_formula("a + min(b, 2) * -c")) == {"a", "b", "c"}

    def test_numeric_fields_filters_payload(self):
        fields = numeric_fields({"steps": 10, "ratio": 0.5, "ok": True, "name": "x", "nested": {"a": 1}})
        assert fields == {"steps": Decimal("10"), "ratio": Decimal("0.5")}
