"""Tests for formula parsing, validation and sandboxed evaluation."""

import pytest

from gridcore.errors import CalculationError, FormulaEvaluationError, FormulaSyntaxError
from gridcore.formulas import execute_calculated_field, parse_formula, validate_formula

AB = [{"key": "a"}, {"key": "b"}]


class TestParseFormula:
    def test_extracts_parts(self):
        parsed = parse_formula("ROUND([a] * 1.5, 0) + [a] + [b]")
        assert parsed.dependencies == ("a", "b")
        assert parsed.functions == ("ROUND",)
        assert parsed.constants == (1.5, 0.0)
        assert {"*", "+", "(", ")"} <= set(parsed.operators)
        assert parsed.field_references[0] == {"name": "a", "reference": "[a]", "position": 6}

    def test_field_names_may_contain_spaces(self):
        assert parse_formula("[Gross Profit] / 2").dependencies == ("Gross Profit",)

    @pytest.mark.parametrize("formula", [None, 5, ["[a]"]])
    def test_rejects_non_strings(self, formula):
        with pytest.raises(FormulaSyntaxError):
            parse_formula(formula)


class TestValidateFormula:
    def test_round_trip(self):
        result = validate_formula("[a]+[b]", AB)
        assert result.is_valid
        assert result.dependencies == ["a", "b"]
        assert result.errors == []

    def test_unknown_field(self):
        result = validate_formula("[a] + [c]", AB)
        assert not result.is_valid
        assert "Field 'c' is not available" in result.errors

    def test_available_fields_as_strings(self):
        assert validate_formula("[a] - [b]", ["a", "b"]).is_valid

    def test_unbalanced_parentheses(self):
        assert "Unbalanced parentheses in formula" in validate_formula("([a] + 1", AB).errors
        assert "Unbalanced parentheses in formula" in validate_formula(")[a](", AB).errors

    def test_invalid_operator_sequence(self):
        assert "Invalid operator sequence detected" in validate_formula("[a] // 2", AB).errors
        assert "Invalid operator sequence detected" in validate_formula("[a] ** 2", AB).errors

    def test_empty_reference(self):
        assert "Empty field reference found" in validate_formula("[] + 1", AB).errors

    def test_if_needs_three_arguments(self):
        result = validate_formula("IF([a] > 1, 2)", AB)
        assert not result.is_valid
        assert result.errors == ["IF function requires exactly 3 parameters: IF(condition, trueValue, falseValue)"]

    def test_nested_calls_inside_if(self):
        assert validate_formula("IF(MAX([a], [b]) > 1, ROUND([a], 1), 0)", AB).is_valid

    def test_division_warning(self):
        result = validate_formula("[a]/[b]", AB)
        assert result.is_valid
        assert result.warnings == ["Consider using IF() to prevent division by zero"]
        assert validate_formula("IF([b] == 0, 0, [a] / [b])", AB).warnings == []

    def test_unknown_function(self):
        result = validate_formula("EVIL(1)", AB)
        assert not result.is_valid
        assert any("Unknown function" in e for e in result.errors)

    def test_required(self):
        assert validate_formula(None, AB).errors == ["Formula is required"]
        assert validate_formula("", AB).errors == ["Formula is required"]

    def test_to_dict(self):
        assert validate_formula("[a]", AB).to_dict() == {
            "isValid": True,
            "errors": [],
            "warnings": [],
            "dependencies": ["a"],
        }


class TestExecute:
    def test_round_trip(self):
        assert execute_calculated_field("[a]+[b]", {"a": 2, "b": 3}, AB) == 5

    def test_division_by_zero_is_zero(self):
        assert execute_calculated_field("[a]/[b]", {"a": 1, "b": 0}) == 0
        assert execute_calculated_field("[a]/[b]", {"a": 0, "b": 0}) == 0

    @pytest.mark.parametrize(
        "formula",
        ["ROUND([a]/[b])", "ROUND([a]/[b] * 100, 2)", "FLOOR([a]/[b])", "CEIL([a]/[b])", "CEIL(SQRT(-1))", "ROUND(0/[b])"],
    )
    def test_rounding_a_non_finite_value_is_zero(self, formula):
        assert execute_calculated_field(formula, {"a": 5, "b": 0}) == 0

    def test_if_only_evaluates_selected_branch(self):
        formula = "IF([b] == 0, 0, [a] / [b])"
        assert execute_calculated_field(formula, {"a": 4, "b": 0}) == 0
        assert execute_calculated_field(formula, {"a": 4, "b": 2}) == 2

    @pytest.mark.parametrize(
        "formula, expected",
        [
            ("ABS(-5) + MAX(1, 7, 3) + MIN(4, 2)", 14),
            ("ROUND(2.5)", 3),
            ("ROUND(-2.5)", -2),
            ("ROUND(1.234, 2)", 1.23),
            ("FLOOR(2.7) + CEIL(2.1)", 5),
            ("SQRT(16)", 4),
            ("POW(2, 10)", 1024),
            ("AVG(1, 2, 3)", 2),
            ("SUM(1, 2, 3)", 6),
            ("COUNT(1, 2, 3)", 3),
            ("abs(-2)", 2),
            ("7 % 3", 1),
            ("(1 + 2) * 3", 9),
            ("SQRT(-1)", 0),
        ],
    )
    def test_functions_and_arithmetic(self, formula, expected):
        assert execute_calculated_field(formula, {}) == pytest.approx(expected)

    def test_logical_operators(self):
        row = {"a": 2, "b": 3}
        assert execute_calculated_field("[a] > 1 && [b] < 5", row) == 1
        assert execute_calculated_field("[a] === 2 || [b] !== 3", row) == 1
        assert execute_calculated_field("![a]", {"a": 0}) == 1
        assert execute_calculated_field("1 > 2", {}) == 0

    def test_missing_and_null_fields_read_as_zero(self):
        assert execute_calculated_field("[missing] + 1", {}) == 1
        assert execute_calculated_field("[a] + 1", {"a": None}) == 1

    def test_field_mapping(self):
        assert execute_calculated_field("[Sales] * 2", {"Sales_total": 5}, field_mapping={"Sales": "Sales_total"}) == 10

    def test_mapping_from_available_fields(self):
        available = [{"key": "amt_total", "field": "amt"}]
        assert execute_calculated_field("[amt]", {"amt_total": 7}, available) == 7

    def test_bare_identifiers_read_row_fields(self):
        assert execute_calculated_field("price * qty", {"price": 2, "qty": 3}) == 6

    def test_unknown_identifier_raises(self):
        with pytest.raises(FormulaEvaluationError) as info:
            execute_calculated_field("foo + 1", {})
        assert str(info.value).startswith("Calculation error:")
        assert isinstance(info.value, CalculationError)

    def test_no_escape_from_the_sandbox(self):
        with pytest.raises(FormulaEvaluationError):
            execute_calculated_field("__import__('os')", {})
        with pytest.raises(FormulaEvaluationError):
            execute_calculated_field("[a].__class__", {"a": 1})

    def test_non_numeric_result_is_zero(self):
        assert execute_calculated_field("'abc'", {}) == 0

    def test_empty_formula(self):
        assert execute_calculated_field("", {}) is None
