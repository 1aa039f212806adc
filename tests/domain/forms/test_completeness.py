"""Tests for progressive-disclosure completeness."""

from formengine.domain.forms.completeness import (
    collapsed_field_blockers,
    group_completeness,
    is_group_complete,
    is_row_collapsed,
)
from formengine.domain.forms.definition import FormDefinition, LineItemGroupConfig
from formengine.domain.forms.group_path import GroupPath
from formengine.domain.forms.group_tree import GroupNode
from formengine.domain.forms.line_item_state import LineItemRow, LineItemState
from formengine.domain.forms.lookup import MappingLookup, TopLookup


def make_config(ui=None, extra_fields=(), **extra):
    raw = {
        "fields": [
            {"id": "CODE", "type": "TEXT", "required": True},
            {"id": "QTY", "type": "NUMBER", "validationRules": [{"then": {"fieldId": "QTY", "min": 1}}]},
            {
                "id": "NOTE",
                "type": "TEXT",
                "required": True,
                "visibility": {"showWhen": {"fieldId": "CODE", "equals": "other"}},
            },
        ],
        "subGroups": [{"id": "S", "fields": [{"id": "AMOUNT", "type": "NUMBER", "required": True}]}],
    }
    raw["fields"].extend(extra_fields)
    if ui is not None:
        raw["ui"] = ui
    raw.update(extra)
    return LineItemGroupConfig.from_dict(raw, "G")


def complete(config, line_items, collapsed_rows=None):
    state = LineItemState.from_dict(line_items)
    node = GroupNode.build(config, GroupPath.root("G"), state)
    return is_group_complete(node, TopLookup({}, state), state, collapsed_rows)


PROGRESSIVE = {"mode": "progressive", "collapsedFields": ["CODE", "QTY"]}


# =========================================================================
# Collapse state
# =========================================================================


class TestCollapseState:
    """Tests for row collapse defaults."""

    def test_non_progressive_rows_never_collapse(self):
        assert not is_row_collapsed(make_config(), "G", "r1", {"G::r1": True})

    def test_progressive_defaults_to_collapsed(self):
        assert is_row_collapsed(make_config(PROGRESSIVE), "G", "r1")

    def test_default_collapsed_false(self):
        config = make_config(dict(PROGRESSIVE, defaultCollapsed=False))
        assert not is_row_collapsed(config, "G", "r1")
        assert is_row_collapsed(config, "G", "r1", {"G::r1": True})

    def test_mode_without_collapsed_fields_is_not_progressive(self):
        assert not is_row_collapsed(make_config({"mode": "progressive"}), "G", "r1")


class TestCollapsedFieldBlockers:
    """Tests for the collapsed-field gate."""

    def test_required_and_rule_failures_block(self):
        config = make_config(PROGRESSIVE)
        row = LineItemRow(id="r1", values={"CODE": "", "QTY": 0})
        assert collapsed_field_blockers(config, row, MappingLookup(row.values)) == ["CODE", "QTY"]

    def test_valid_collapsed_fields_do_not_block(self):
        config = make_config(PROGRESSIVE)
        row = LineItemRow(id="r1", values={"CODE": "x", "QTY": 3})
        assert collapsed_field_blockers(config, row, MappingLookup(row.values)) == []


# =========================================================================
# Group completeness
# =========================================================================


class TestGroupCompleteness:
    """Tests for is_group_complete and group_completeness."""

    def test_empty_group_is_incomplete(self):
        assert not complete(make_config(), {})

    def test_required_fields_filled(self):
        assert complete(make_config(), {"G": [{"id": "r1", "values": {"CODE": "a"}}]})
        assert not complete(make_config(), {"G": [{"id": "r1", "values": {"CODE": ""}}]})

    def test_hidden_required_field_is_ignored(self):
        assert not complete(make_config(), {"G": [{"id": "r1", "values": {"CODE": "other"}}]})
        assert complete(make_config(), {"G": [{"id": "r1", "values": {"CODE": "other", "NOTE": "n"}}]})

    def test_zero_counts_as_filled_in_sub_rows(self):
        line_items = {
            "G": [{"id": "r1", "values": {"CODE": "a"}}],
            "G::r1::S": [{"id": "c1", "values": {"AMOUNT": 0}}],
        }
        assert complete(make_config(), line_items)

    def test_missing_sub_row_field_is_incomplete(self):
        line_items = {
            "G": [{"id": "r1", "values": {"CODE": "a"}}],
            "G::r1::S": [{"id": "c1", "values": {"AMOUNT": ""}}],
        }
        assert not complete(make_config(), line_items)

    def test_disabled_rows_are_skipped(self):
        config = make_config(PROGRESSIVE)
        line_items = {
            "G": [
                {"id": "r1", "values": {"CODE": "", "QTY": 2}},
                {"id": "r2", "values": {"CODE": "b", "QTY": 2}},
            ],
            # sub-rows of a disabled row contribute nothing
            "G::r1::S": [{"id": "c1", "values": {}}],
        }
        assert complete(config, line_items)

    def test_only_disabled_rows_is_incomplete(self):
        config = make_config(PROGRESSIVE)
        assert not complete(config, {"G": [{"id": "r1", "values": {"CODE": "a", "QTY": 0}}]})

    def test_expanded_row_is_counted(self):
        config = make_config(PROGRESSIVE)
        line_items = {"G": [{"id": "r1", "values": {"CODE": "", "QTY": 2}}]}
        assert not complete(config, line_items, {"G::r1": False})

    def test_always_gate_never_disables(self):
        config = make_config(dict(PROGRESSIVE, expandGate="always"))
        line_items = {"G": [{"id": "r1", "values": {"CODE": "a", "QTY": 0}}]}
        assert complete(config, line_items)

    def test_group_completeness_per_question(self):
        definition = FormDefinition.from_dict({"questions": [
            {"id": "A", "type": "LINE_ITEM_GROUP", "lineItemConfig": {"fields": [{"id": "X", "required": True}]}},
            {"id": "B", "type": "LINE_ITEM_GROUP", "lineItemConfig": {"fields": [{"id": "Y"}]}},
            {"id": "NAME", "type": "TEXT"},
        ]})
        state = LineItemState.from_dict({"A": [{"id": "r1", "values": {"X": "1"}}]})
        result = group_completeness(definition, TopLookup({}, state), state)
        assert result == {"A": True, "B": False}

    def test_required_empty_field_keeps_incomplete_group_incomplete(self):
        line_items = {"G": [{"id": "r1", "values": {"CODE": ""}}]}
        assert not complete(make_config(), line_items)
        extra = [{"id": "EXTRA", "type": "TEXT", "required": True}]
        assert not complete(make_config(extra_fields=extra), line_items)

    def test_required_empty_field_makes_complete_group_incomplete(self):
        line_items = {"G": [{"id": "r1", "values": {"CODE": "a"}}]}
        assert complete(make_config(), line_items)
        extra = [{"id": "EXTRA", "type": "TEXT", "required": True}]
        assert not complete(make_config(extra_fields=extra), line_items)


class TestValueMapCompleteness:
    """Required fields with a valueMap are judged by the mapped value."""

    def make_value_map_config(self):
        return make_config(extra_fields=[
            {"id": "KIND", "type": "TEXT"},
            {
                "id": "LABEL",
                "type": "TEXT",
                "required": True,
                "valueMap": {"dependsOn": "KIND", "optionMap": {"a": ["Alpha"]}},
            },
        ])

    def test_mapped_value_fills_required_field(self):
        line_items = {"G": [{"id": "r1", "values": {"CODE": "x", "KIND": "a"}}]}
        assert complete(self.make_value_map_config(), line_items)

    def test_unmapped_key_leaves_required_field_empty(self):
        line_items = {"G": [{"id": "r1", "values": {"CODE": "x", "KIND": "b", "LABEL": "typed"}}]}
        assert not complete(self.make_value_map_config(), line_items)
