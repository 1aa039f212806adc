"""Tests for condition parsing and evaluation."""

from datetime import date

import pytest

from formengine.domain.forms.conditions import (
    ALWAYS,
    AllCondition,
    AlwaysCondition,
    FieldCondition,
    NotCondition,
    RowFilter,
    evaluate,
    first_field_id,
    parse_condition,
    referenced_field_ids,
    row_filter_matches,
)
from formengine.domain.forms.line_item_state import LineItemRow, LineItemState
from formengine.domain.forms.lookup import MappingLookup, RowLookup, TopLookup

TODAY = date(2024, 3, 15)


def make_top(values=None, line_items=None, **kwargs):
    return TopLookup(values or {}, LineItemState.from_dict(line_items or {}), **kwargs)


# =========================================================================
# Parsing
# =========================================================================


class TestParseCondition:
    """Tests for parse_condition."""

    def test_none_is_always(self):
        assert parse_condition(None) is ALWAYS

    def test_unknown_shape_is_always(self):
        assert isinstance(parse_condition({"banana": 1}), AlwaysCondition)
        assert isinstance(parse_condition(42), AlwaysCondition)

    def test_leaf_without_field_id_is_always(self):
        assert isinstance(parse_condition({"fieldId": "  ", "equals": "x"}), AlwaysCondition)

    def test_leaf_equals_scalar_becomes_tuple(self):
        node = parse_condition({"fieldId": "A", "equals": "x"})
        assert isinstance(node, FieldCondition)
        assert node.equals == ("x",)

    def test_list_is_all(self):
        node = parse_condition([{"fieldId": "A", "notEmpty": True}, {"fieldId": "B", "notEmpty": True}])
        assert isinstance(node, AllCondition)
        assert len(node.conditions) == 2

    def test_not_wraps_operand(self):
        node = parse_condition({"not": {"fieldId": "A", "equals": "x"}})
        assert isinstance(node, NotCondition)

    def test_parsed_node_passes_through(self):
        node = FieldCondition(field_id="A", equals=("x",))
        assert parse_condition(node) is node

    def test_string_flags(self):
        node = parse_condition({"fieldId": "A", "notEmpty": "false"})
        assert node.not_empty is False

    def test_first_and_referenced_field_ids(self):
        raw = {"all": [{"not": {"fieldId": "B", "equals": 1}}, {"fieldId": "C", "notEmpty": True}, {"fieldId": "B"}]}
        assert first_field_id(raw) == "B"
        assert referenced_field_ids(raw) == ["B", "C"]


# =========================================================================
# Leaf operators
# =========================================================================


class TestLeafOperators:
    """Tests for leaf comparison semantics."""

    def test_equals_is_trim_and_case_tolerant(self):
        top = make_top({"A": "  Yes "})
        assert evaluate({"fieldId": "A", "equals": "yes"}, top)

    def test_equals_any_element_of_multi_value(self):
        top = make_top({"A": ["x", "y"]})
        assert evaluate({"fieldId": "A", "equals": ["z", "y"]}, top)
        assert not evaluate({"fieldId": "A", "equals": "z"}, top)

    def test_not_equals_rejects_any_match(self):
        top = make_top({"A": ["x", "y"]})
        assert not evaluate({"fieldId": "A", "notEquals": "Y"}, top)
        assert evaluate({"fieldId": "A", "notEquals": "z"}, top)

    def test_numeric_equals_normalises_whole_floats(self):
        top = make_top({"A": 3.0})
        assert evaluate({"fieldId": "A", "equals": "3"}, top)

    def test_greater_and_less_than(self):
        top = make_top({"A": "1,5"})
        assert evaluate({"fieldId": "A", "greaterThan": 1}, top)
        assert evaluate({"fieldId": "A", "lessThan": "2"}, top)
        assert not evaluate({"fieldId": "A", "greaterThan": 2}, top)

    def test_non_numeric_threshold_is_permissive(self):
        top = make_top({"A": 1})
        assert evaluate({"fieldId": "A", "greaterThan": "lots"}, top)

    def test_greater_than_with_blank_value_fails(self):
        assert not evaluate({"fieldId": "A", "greaterThan": 0}, make_top({"A": ""}))

    @pytest.mark.parametrize("value,expected", [
        (None, False),
        ("", False),
        ("  ", False),
        ([], False),
        ([""], False),
        (0, False),
        (False, True),
        ("x", True),
        (["x"], True),
    ])
    def test_not_empty(self, value, expected):
        assert evaluate({"fieldId": "A", "notEmpty": True}, make_top({"A": value})) is expected

    def test_is_empty_is_inverse_of_not_empty(self):
        top = make_top({"A": ""})
        assert evaluate({"fieldId": "A", "isEmpty": True}, top)
        assert not evaluate({"fieldId": "A", "notEmpty": True}, top)

    def test_all_operators_must_hold(self):
        top = make_top({"A": 5})
        assert evaluate({"fieldId": "A", "greaterThan": 1, "lessThan": 10}, top)
        assert not evaluate({"fieldId": "A", "greaterThan": 1, "lessThan": 4}, top)

    def test_leaf_without_operator_matches(self):
        assert evaluate({"fieldId": "A"}, make_top())


class TestDatePredicates:
    """Tests for isToday / isInPast / isInFuture."""

    def test_is_today(self):
        top = make_top({"D": "2024-03-15"})
        assert evaluate({"fieldId": "D", "isToday": True}, top, TODAY)
        assert not evaluate({"fieldId": "D", "isInPast": True}, top, TODAY)

    def test_past_and_future(self):
        assert evaluate({"fieldId": "D", "isInPast": True}, make_top({"D": "14/03/2024"}), TODAY)
        assert evaluate({"fieldId": "D", "isInFuture": True}, make_top({"D": date(2024, 3, 16)}), TODAY)

    def test_false_flag_requires_present_date(self):
        assert evaluate({"fieldId": "D", "isToday": False}, make_top({"D": "2024-01-01"}), TODAY)
        assert not evaluate({"fieldId": "D", "isToday": False}, make_top({"D": ""}), TODAY)

    def test_unparseable_date_never_matches(self):
        assert not evaluate({"fieldId": "D", "isInPast": True}, make_top({"D": "soon"}), TODAY)


# =========================================================================
# Compound conditions
# =========================================================================


class TestCompound:
    """Tests for all / any / not."""

    def test_empty_all_and_any_are_true(self):
        top = make_top()
        assert evaluate({"all": []}, top)
        assert evaluate({"any": []}, top)

    def test_any(self):
        top = make_top({"A": "x"})
        assert evaluate({"any": [{"fieldId": "A", "equals": "y"}, {"fieldId": "A", "equals": "x"}]}, top)

    @pytest.mark.parametrize("raw", [
        {"fieldId": "A", "equals": "x"},
        {"fieldId": "A", "notEmpty": True},
        {"all": [{"fieldId": "A", "equals": "x"}, {"fieldId": "B", "equals": "y"}]},
        {"any": [{"fieldId": "B", "equals": "x"}]},
    ])
    def test_not_is_negation(self, raw):
        top = make_top({"A": "x", "B": "z"})
        assert evaluate({"not": raw}, top) is (not evaluate(raw, top))


# =========================================================================
# Row scope and lineItems clauses
# =========================================================================


class TestRowScope:
    """Tests for RowLookup escalation and lineItems clauses."""

    def test_row_value_wins_over_record(self):
        row = RowLookup({"A": "row"}, make_top({"A": "top"}), group_key="G", row_id="r1")
        assert evaluate({"fieldId": "A", "equals": "row"}, row)

    def test_blank_row_value_escalates(self):
        row = RowLookup({"A": ""}, make_top({"A": "top"}), group_key="G", row_id="r1")
        assert evaluate({"fieldId": "A", "equals": "top"}, row)

    def test_group_scoped_key_wins(self):
        row = RowLookup({"G__A": "scoped", "A": "plain"}, make_top(), group_key="G", row_id="r1")
        assert evaluate({"fieldId": "A", "equals": "scoped"}, row)

    def test_line_items_any_and_all(self):
        top = make_top(line_items={"G": [
            {"id": "r1", "values": {"QTY": 1}},
            {"id": "r2", "values": {"QTY": 5}},
        ]})
        any_clause = {"lineItems": {"groupId": "G", "when": {"fieldId": "QTY", "greaterThan": 3}}}
        all_clause = {"lineItems": {"groupId": "G", "match": "all", "when": {"fieldId": "QTY", "greaterThan": 3}}}
        assert evaluate(any_clause, top)
        assert not evaluate(all_clause, top)

    def test_line_items_all_needs_rows(self):
        clause = {"lineItems": {"groupId": "G", "match": "all", "when": {"fieldId": "QTY", "notEmpty": True}}}
        assert not evaluate(clause, make_top())

    def test_line_items_sub_group_with_parent_when(self):
        top = make_top(line_items={
            "G": [{"id": "p1", "values": {"KIND": "a"}}, {"id": "p2", "values": {"KIND": "b"}}],
            "G::p1::S": [{"id": "c1", "values": {"NAME": "one"}}],
            "G::p2::S": [{"id": "c2", "values": {"NAME": "two"}}],
        })
        clause = {"lineItems": {
            "groupId": "G",
            "subGroupId": "S",
            "parentWhen": {"fieldId": "KIND", "equals": "b"},
            "when": {"fieldId": "NAME", "equals": "one"},
        }}
        assert not evaluate(clause, top)
        clause["lineItems"]["parentWhen"] = {"fieldId": "KIND", "equals": "a"}
        assert evaluate(clause, top)

    def test_line_items_from_row_scope_uses_record(self):
        top = make_top(line_items={"G": [{"id": "r1", "values": {"X": "y"}}]})
        row = RowLookup({}, top, group_key="OTHER", row_id="o1")
        assert evaluate({"lineItems": {"groupId": "G", "when": {"fieldId": "X", "equals": "y"}}}, row)


class TestRowFilter:
    """Tests for include/exclude row filters."""

    def test_no_filter_matches(self):
        assert row_filter_matches(None, {"A": 1})

    def test_include_and_exclude(self):
        row_filter = RowFilter.from_dict({
            "includeWhen": {"fieldId": "KIND", "equals": "x"},
            "excludeWhen": {"fieldId": "SKIP", "equals": "yes"},
        })
        assert row_filter_matches(row_filter, {"KIND": "x"})
        assert not row_filter_matches(row_filter, {"KIND": "y"})
        assert not row_filter_matches(row_filter, {"KIND": "x", "SKIP": "yes"})

    def test_filter_reads_only_row_values(self):
        row_filter = RowFilter.from_dict({"includeWhen": {"fieldId": "A", "notEmpty": True}})
        assert not row_filter_matches(row_filter, MappingLookup({}))

    def test_row_values_passed_as_row(self):
        row = LineItemRow.from_dict({"id": "r1", "values": {"A": "x"}})
        row_filter = RowFilter.from_dict({"includeWhen": {"fieldId": "A", "equals": "x"}})
        assert row_filter_matches(row_filter, row.values)
