"""Tests for the expression evaluator and its function library."""

from __future__ import annotations

import math
from datetime import date, datetime
from typing import Any

import pytest
from pydantic import ValidationError

from schemaform.core.errors import ExpressionEvaluationError, SchemaError, UnknownFunction, UnsupportedOperator
from schemaform.core.expression_lang.evaluator import evaluate, system_values
from schemaform.core.expression_lang.functions import AUTO_NUMBER_KEY, UUID_KEY
from schemaform.core.ir.expressions import (
    AssignmentExpression,
    BinaryExpression,
    CallExpression,
    Identifier,
    Literal,
    LogicalExpression,
    MemberExpression,
    SystemIdentifier,
    parse_expression_tree,
    to_wire,
)


def ident(name: str, *path: str) -> Identifier:
    return Identifier(name=name, source="Input", property_path=path)


def lit(value: Any) -> Literal:
    return Literal(value=value)


def binary(op: str, left: Any, right: Any) -> BinaryExpression:
    return BinaryExpression(operator=op, arguments=(left, right))


def call(name: str, *args: Any) -> CallExpression:
    return CallExpression(callee=name, arguments=args)


# =============================================================================
# Parsing
# =============================================================================


class TestParseExpressionTree:
    def test_parses_binary_expression(self) -> None:
        tree = parse_expression_tree(
            {
                "Type": "BinaryExpression",
                "Operator": ">=",
                "Arguments": [
                    {"Type": "Identifier", "Name": "Age", "Source": "Input"},
                    {"Type": "Literal", "Value": 18},
                ],
            }
        )
        assert isinstance(tree, BinaryExpression)
        assert tree.left == Identifier(name="Age", source="Input")
        assert tree.right == Literal(value=18)
        assert str(tree) == "(Age >= 18)"

    def test_flattens_property_chain(self) -> None:
        tree = parse_expression_tree(
            {
                "Type": "Identifier",
                "Name": "Customer",
                "Property": {"Name": "Address", "Property": {"Name": "City"}},
            }
        )
        assert isinstance(tree, Identifier)
        assert tree.property_path == ("Address", "City")
        assert to_wire(tree)["Property"] == {"Name": "Address", "Property": {"Name": "City"}}

    def test_unknown_node_type_raises(self) -> None:
        with pytest.raises(SchemaError, match="Unknown expression type"):
            parse_expression_tree({"Type": "Lambda"})

    def test_binary_arity_is_checked(self) -> None:
        with pytest.raises(SchemaError, match="Malformed BinaryExpression"):
            parse_expression_tree(
                {"Type": "BinaryExpression", "Operator": "+", "Arguments": [{"Type": "Literal", "Value": 1}]}
            )

    def test_call_requires_callee(self) -> None:
        with pytest.raises(SchemaError, match="requires Callee"):
            parse_expression_tree({"Type": "CallExpression", "Arguments": []})

    def test_nodes_are_immutable(self) -> None:
        node = lit(1)
        with pytest.raises(ValidationError):
            node.value = 2  # type: ignore[misc]


# =============================================================================
# Identifiers and system values
# =============================================================================


class TestIdentifiers:
    def test_unknown_field_is_none(self) -> None:
        assert evaluate(ident("Missing"), {}) is None

    def test_property_path_walks_dicts(self) -> None:
        ctx = {"Customer": {"Address": {"City": "Leeds"}}}
        assert evaluate(ident("Customer", "Address", "City"), ctx) == "Leeds"

    def test_missing_property_step_is_none(self) -> None:
        assert evaluate(ident("Customer", "Address", "City"), {"Customer": {}}) is None

    def test_member_expression_with_index(self) -> None:
        node = MemberExpression(arguments=(ident("Lines"), lit(1), ident("Sku")))
        ctx = {"Lines": [{"Sku": "A"}, {"Sku": "B"}]}
        assert evaluate(node, ctx) == "B"

    def test_system_identifier_reads_context(self) -> None:
        now = datetime(2024, 5, 1, 9, 30)
        ctx = system_values({"id": "u-1", "Name": "Ada"}, now=now)
        assert evaluate(SystemIdentifier(name="TODAY"), ctx) == date(2024, 5, 1)
        assert evaluate(SystemIdentifier(name="CURRENT_USER_ID"), ctx) == "u-1"
        assert evaluate(SystemIdentifier(name="CURRENT_USER", property_path=("Name",)), ctx) == "Ada"

    def test_system_identifier_without_user(self) -> None:
        assert evaluate(SystemIdentifier(name="CURRENT_USER"), {}) is None

    def test_unknown_system_identifier_raises(self) -> None:
        with pytest.raises(ExpressionEvaluationError):
            evaluate(SystemIdentifier(name="TOMORROW"), {})

    def test_assignment_unwraps_value(self) -> None:
        assert evaluate(AssignmentExpression(arguments=(lit(5),)), {}) == 5


# =============================================================================
# Operators
# =============================================================================


class TestComparison:
    @pytest.mark.parametrize(
        ("age", "expected"),
        [(20, True), (18, True), ("18", True), (16, False), (None, False), ("abc", False)],
    )
    def test_age_threshold(self, age: Any, expected: bool) -> None:
        rule = binary(">=", ident("Age"), lit(18))
        assert evaluate(rule, {"Age": age}) is expected

    def test_loose_equality_coerces(self) -> None:
        assert evaluate(binary("==", lit("18"), lit(18)), {}) is True
        assert evaluate(binary("!=", lit("18"), lit(18)), {}) is False

    def test_strict_equality_does_not_coerce(self) -> None:
        assert evaluate(binary("===", lit("18"), lit(18)), {}) is False
        assert evaluate(binary("===", lit(18), lit(18.0)), {}) is True
        assert evaluate(binary("!==", lit("18"), lit(18)), {}) is True

    def test_null_equals_only_null(self) -> None:
        assert evaluate(binary("==", ident("Missing"), lit(None)), {}) is True
        assert evaluate(binary("==", lit(0), lit(None)), {}) is False

    def test_unsupported_operator(self) -> None:
        with pytest.raises(UnsupportedOperator) as exc_info:
            evaluate(binary("**", lit(2), lit(3)), {})
        assert exc_info.value.operator == "**"


class TestArithmetic:
    def test_basic_operations(self) -> None:
        ctx = {"Price": 2.5, "Quantity": 4}
        assert evaluate(binary("*", ident("Price"), ident("Quantity")), ctx) == 10
        assert evaluate(binary("-", lit(10), lit(4)), {}) == 6
        assert evaluate(binary("/", lit(7), lit(2)), {}) == 3.5

    def test_integral_results_collapse_to_int(self) -> None:
        result = evaluate(binary("*", lit(2), lit(3.0)), {})
        assert result == 6
        assert isinstance(result, int)

    def test_plus_concatenates_text(self) -> None:
        assert evaluate(binary("+", lit("A"), lit(1)), {}) == "A1"
        assert evaluate(binary("+", lit(1), lit("1")), {}) == "11"

    def test_numeric_strings_are_coerced(self) -> None:
        assert evaluate(binary("*", lit("3"), lit(2)), {}) == 6

    def test_division_by_zero(self) -> None:
        assert evaluate(binary("/", lit(1), lit(0)), {}) == math.inf
        assert evaluate(binary("/", lit(-1), lit(0)), {}) == -math.inf
        assert math.isnan(evaluate(binary("/", lit(0), lit(0)), {}))

    def test_modulo_follows_dividend_sign(self) -> None:
        assert evaluate(binary("%", lit(-7), lit(3)), {}) == -1
        assert math.isnan(evaluate(binary("%", lit(1), lit(0)), {}))

    def test_null_operand_gives_nan(self) -> None:
        assert math.isnan(evaluate(binary("+", ident("Missing"), lit(1)), {}))

    @pytest.mark.parametrize("op", ["/", "%"])
    def test_overflow_is_an_evaluation_error(self, op: str) -> None:
        with pytest.raises(ExpressionEvaluationError, match="failed"):
            evaluate(binary(op, ident("Qty"), lit(3)), {"Qty": 10**400})


class TestLogical:
    def test_and_or(self) -> None:
        true, false = lit(True), lit(False)
        assert evaluate(LogicalExpression(operator="AND", arguments=(true, true)), {}) is True
        assert evaluate(LogicalExpression(operator="AND", arguments=(true, false)), {}) is False
        assert evaluate(LogicalExpression(operator="OR", arguments=(false, true)), {}) is True

    def test_and_short_circuits(self) -> None:
        node = LogicalExpression(operator="AND", arguments=(lit(False), call("NO_SUCH_FUNCTION")))
        assert evaluate(node, {}) is False

    def test_or_short_circuits(self) -> None:
        node = LogicalExpression(operator="OR", arguments=(lit(1), call("NO_SUCH_FUNCTION")))
        assert evaluate(node, {}) is True

    def test_second_operand_evaluated_when_needed(self) -> None:
        node = LogicalExpression(operator="AND", arguments=(lit(True), call("NO_SUCH_FUNCTION")))
        with pytest.raises(UnknownFunction):
            evaluate(node, {})

    def test_result_is_boolean(self) -> None:
        node = LogicalExpression(operator="OR", arguments=(lit(""), lit("x")))
        assert evaluate(node, {}) is True

    def test_unknown_logical_operator(self) -> None:
        node = LogicalExpression(operator="XOR", arguments=(lit(True), lit(False)))
        with pytest.raises(UnsupportedOperator):
            evaluate(node, {})


# =============================================================================
# Function library
# =============================================================================


class TestStringFunctions:
    def test_concat_full_name(self) -> None:
        node = call("CONCAT", ident("FirstName"), lit(" "), ident("LastName"))
        assert evaluate(node, {"FirstName": "Ada", "LastName": "Lovelace"}) == "Ada Lovelace"

    def test_concat_renders_null_as_empty_and_zero_as_zero(self) -> None:
        assert evaluate(call("CONCAT", lit("n="), lit(0), ident("Missing")), {}) == "n=0"

    def test_trim_length_case(self) -> None:
        assert evaluate(call("TRIM", lit("  hi  ")), {}) == "hi"
        assert evaluate(call("LENGTH", lit("hello")), {}) == 5
        assert evaluate(call("UPPER", lit("abc")), {}) == "ABC"
        assert evaluate(call("LOWER", lit("ABC")), {}) == "abc"

    def test_contains_and_matches(self) -> None:
        assert evaluate(call("CONTAINS", lit("widget"), lit("dge")), {}) is True
        assert evaluate(call("MATCHES", lit("AB-123"), lit(r"^[A-Z]{2}-\d+$")), {}) is True

    def test_invalid_pattern_raises(self) -> None:
        with pytest.raises(ExpressionEvaluationError, match="Invalid pattern"):
            evaluate(call("MATCHES", lit("x"), lit("(")), {})

    def test_substring(self) -> None:
        assert evaluate(call("SUBSTRING", lit("abcdef"), lit(2), lit(3)), {}) == "cde"
        assert evaluate(call("SUBSTRING", lit("abcdef"), lit(4)), {}) == "ef"


class TestNumericFunctions:
    def test_aggregates(self) -> None:
        assert evaluate(call("SUM", lit(1), lit(2), lit("3")), {}) == 6
        assert evaluate(call("AVG", lit(2), lit(4)), {}) == 3
        assert evaluate(call("MIN", lit(5), lit(-1)), {}) == -1
        assert evaluate(call("MAX", lit(5), lit(-1)), {}) == 5

    def test_aggregates_flatten_arrays(self) -> None:
        assert evaluate(call("SUM", ident("Amounts")), {"Amounts": [1, 2, 3]}) == 6

    def test_min_max_of_nothing_is_zero(self) -> None:
        assert evaluate(call("MIN"), {}) == 0
        assert evaluate(call("MAX"), {}) == 0

    @pytest.mark.parametrize(
        ("value", "digits", "expected"),
        [(2.5, 0, 3), (-2.5, 0, -3), (1.005, 2, 1.01), (1234.5678, 1, 1234.6)],
    )
    def test_round_half_away_from_zero(self, value: float, digits: int, expected: float) -> None:
        assert evaluate(call("ROUND", lit(value), lit(digits)), {}) == expected

    def test_floor_ceil_abs(self) -> None:
        assert evaluate(call("FLOOR", lit(2.7)), {}) == 2
        assert evaluate(call("CEIL", lit(2.1)), {}) == 3
        assert evaluate(call("ABS", lit(-4)), {}) == 4


class TestDateFunctions:
    def test_parts(self) -> None:
        assert evaluate(call("YEAR", lit("2024-03-15")), {}) == 2024
        assert evaluate(call("MONTH", lit("2024-03-15")), {}) == 3
        assert evaluate(call("DAY", lit("2024-03-15")), {}) == 15

    def test_date_diff_rounds_up_and_is_absolute(self) -> None:
        assert evaluate(call("DATE_DIFF", lit("2024-01-01"), lit("2024-01-03")), {}) == 2
        assert evaluate(call("DATE_DIFF", lit("2024-01-03"), lit("2024-01-01")), {}) == 2
        assert evaluate(call("DATE_DIFF", lit("2024-01-01T00:00:00"), lit("2024-01-01T01:00:00")), {}) == 1

    def test_add_days_keeps_dates(self) -> None:
        assert evaluate(call("ADD_DAYS", ident("Start"), lit(10)), {"Start": date(2024, 2, 25)}) == date(2024, 3, 6)

    def test_add_months_clamps_to_month_end(self) -> None:
        assert evaluate(call("ADD_MONTHS", ident("Start"), lit(1)), {"Start": date(2024, 1, 31)}) == date(2024, 2, 29)

    def test_invalid_date_raises(self) -> None:
        with pytest.raises(ExpressionEvaluationError, match="Invalid date"):
            evaluate(call("YEAR", lit("not a date")), {})


class TestTypeAndArrayFunctions:
    def test_if_is_eager_but_selects(self) -> None:
        assert evaluate(call("IF", binary(">", ident("Qty"), lit(5)), lit("bulk"), lit("single")), {"Qty": 9}) == "bulk"
        assert evaluate(call("IF", lit(0), lit("yes"), lit("no")), {}) == "no"

    def test_is_null_and_is_empty(self) -> None:
        assert evaluate(call("IS_NULL", ident("Missing")), {}) is True
        assert evaluate(call("IS_EMPTY", lit("   ")), {}) is True
        assert evaluate(call("IS_EMPTY", lit([])), {}) is True
        assert evaluate(call("IS_EMPTY", lit(0)), {}) is False

    def test_is_number_and_is_date(self) -> None:
        assert evaluate(call("IS_NUMBER", lit("12.5")), {}) is True
        assert evaluate(call("IS_NUMBER", lit("")), {}) is False
        assert evaluate(call("IS_NUMBER", lit(True)), {}) is False
        assert evaluate(call("IS_DATE", lit("2024-01-01")), {}) is True
        assert evaluate(call("IS_DATE", lit("soon")), {}) is False

    def test_array_functions(self) -> None:
        ctx = {"Tags": ["a", "b", 1]}
        assert evaluate(call("ARRAY_LENGTH", ident("Tags")), ctx) == 3
        assert evaluate(call("ARRAY_CONTAINS", ident("Tags"), lit("b")), ctx) is True
        assert evaluate(call("ARRAY_CONTAINS", ident("Tags"), lit("1")), ctx) is False
        assert evaluate(call("ARRAY_JOIN", ident("Tags"), lit("|")), ctx) == "a|b|1"
        assert evaluate(call("ARRAY_LENGTH", lit("abc")), {}) == 0

    def test_generators_can_be_injected(self) -> None:
        ctx = {AUTO_NUMBER_KEY: lambda: 4242, UUID_KEY: lambda: "fixed-uuid"}
        assert evaluate(call("AUTO_NUMBER"), ctx) == 4242
        assert evaluate(call("UUID"), ctx) == "fixed-uuid"

    def test_default_auto_number_range(self) -> None:
        assert 1000 <= evaluate(call("AUTO_NUMBER"), {}) <= 10999

    def test_unknown_function(self) -> None:
        with pytest.raises(UnknownFunction) as exc_info:
            evaluate(call("EXPLODE", lit(1)), {})
        assert exc_info.value.name == "EXPLODE"
        assert isinstance(exc_info.value, ExpressionEvaluationError)
