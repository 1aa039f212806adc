"""Tests for row-flow references, output, prompts and action plans."""

from formengine.domain.forms.line_item_state import LineItemState
from formengine.domain.forms.lookup import TopLookup
from formengine.domain.forms.row_flow import (
    PlannedAddLineItems,
    PlannedCloseOverlay,
    PlannedDeleteLineItems,
    PlannedDeleteRow,
    PlannedOpenOverlay,
    PlannedSetValue,
    RowFlowResolver,
    planned_effect_to_dict,
    resolve_row_flow_action_plan,
)
from formengine.domain.forms.row_flow_models import RowFlowConfig, SetValueEffect, segment_action_ids

FLOW = {
    "references": {
        "type": {"groupId": "TYPE", "rowFilter": {"includeWhen": {"fieldId": "KIND", "equals": "main"}}},
        "ing": {"groupId": "ING", "parentRef": "type"},
        "loopA": {"groupId": "X", "parentRef": "loopB"},
        "loopB": {"groupId": "Y", "parentRef": "loopA"},
    },
    "output": {
        "hideEmpty": True,
        "segments": [
            {"fieldRef": "RECIPE"},
            {"fieldRef": "ing.ING_NAME", "format": {"listDelimiter": " + "}},
            {"fieldRef": "QTY"},
            {"fieldRef": "loopA.NAME"},
        ],
        "actions": ["deleteRow", {"id": "openOverlay", "showWhen": {"fieldId": "MP_IS_REHEAT", "equals": "Yes"}}],
    },
    "prompts": [
        {"id": "recipe", "fieldRef": "RECIPE"},
        {"id": "qty", "fieldRef": "QTY"},
        {"id": "types", "input": {"kind": "selectorOverlay", "targetRef": "type"}},
    ],
    "actions": [
        {"id": "resetLeftovers", "effects": [
            {"type": "setValue", "fieldRef": "MP_IS_REHEAT", "value": "No"},
            {"type": "deleteLineItems", "targetRef": "type"},
        ]},
        {"id": "openOverlay", "effects": [
            {"type": "openOverlay", "groupId": "TYPE", "when": {"fieldId": "MP_IS_REHEAT", "equals": "Yes"}},
        ]},
        {"id": "addIngredients", "effects": [
            {"type": "addLineItems", "targetRef": "ing", "count": 2, "preset": {"ING_NAME": "Salt"}},
            {"type": "closeOverlay"},
            {"type": "bogus"},
        ]},
        {"id": "deleteRow", "effects": [{"type": "deleteRow"}]},
    ],
}


def make_resolver(meal_values=None, record=None, flow=None):
    values = {"RECIPE": "Soup", "MP_IS_REHEAT": "No", "QTY": ""}
    values.update(meal_values or {})
    state = LineItemState.from_dict({
        "MEALS": [{"id": "r1", "values": values}],
        "MEALS::r1::TYPE": [
            {"id": "t1", "values": {"TYPE_NAME": "Lunch", "KIND": "main"}},
            {"id": "t2", "values": {"TYPE_NAME": "Side", "KIND": "side"}},
        ],
        "MEALS::r1::TYPE::t1::ING": [
            {"id": "i1", "values": {"ING_NAME": "Tomato"}},
            {"id": "i2", "values": {"ING_NAME": "Onion"}},
        ],
        "MEALS::r1::TYPE::t2::ING": [{"id": "i3", "values": {"ING_NAME": "Salt"}}],
    })
    top = TopLookup(record or {}, state)
    config = RowFlowConfig.from_dict(flow or FLOW)
    return RowFlowResolver(config, "MEALS", state.rows("MEALS")[0], top, sub_group_ids=["TYPE"])


# =========================================================================
# References
# =========================================================================


class TestReferences:
    """Tests for reference resolution."""

    def test_filtered_local_sub_group(self):
        refs = make_resolver().references
        assert [r.row.id for r in refs["type"].rows] == ["t1"]
        assert refs["type"].rows[0].group_key == "MEALS::r1::TYPE"

    def test_parent_ref_nests_under_parent_rows(self):
        ing = make_resolver().references["ing"]
        assert ing.rows_by_group() == {"MEALS::r1::TYPE::t1::ING": ["i1", "i2"]}

    def test_parent_ref_chain_two_levels_deep(self):
        state = LineItemState.from_dict({
            "MEALS": [{"id": "r1", "values": {"RECIPE": "Soup"}}],
            "MEALS::r1::TYPE": [
                {"id": "t1", "values": {"KIND": "main"}},
                {"id": "t2", "values": {"KIND": "side"}},
            ],
            "MEALS::r1::TYPE::t1::ING": [{"id": "i1", "values": {}}, {"id": "i2", "values": {}}],
            "MEALS::r1::TYPE::t2::ING": [{"id": "i3", "values": {}}],
            "MEALS::r1::TYPE::t1::ING::i1::SUB": [{"id": "s1", "values": {}}, {"id": "s2", "values": {}}],
            "MEALS::r1::TYPE::t1::ING::i2::SUB": [{"id": "s3", "values": {}}],
            "MEALS::r1::TYPE::t2::ING::i3::SUB": [{"id": "s4", "values": {}}],
        })
        config = RowFlowConfig.from_dict({"references": {
            "type": FLOW["references"]["type"],
            "ing": {"groupId": "ING", "parentRef": "type"},
            "sub": {"groupId": "SUB", "parentRef": "ing"},
        }})
        resolver = RowFlowResolver(config, "MEALS", state.rows("MEALS")[0], TopLookup({}, state), sub_group_ids=["TYPE"])
        sub = resolver.references["sub"]
        assert [r.row.id for r in sub.rows] == ["s1", "s2", "s3"]
        assert sub.rows_by_group() == {
            "MEALS::r1::TYPE::t1::ING::i1::SUB": ["s1", "s2"],
            "MEALS::r1::TYPE::t1::ING::i2::SUB": ["s3"],
        }

    def test_cycle_resolves_to_nothing(self):
        resolver = make_resolver()
        assert "loopA" not in resolver.references
        assert "loopB" not in resolver.references
        target = resolver.field_target("loopA.NAME")
        assert target.rows == ()
        assert target.values() == []

    def test_bare_field_ref_targets_anchor(self):
        target = make_resolver().field_target("QTY")
        assert target.field_path == "MEALS__QTY__r1"
        assert target.ref_id is None


# =========================================================================
# Output and prompts
# =========================================================================


class TestRowFlowState:
    """Tests for segments, prompts and output actions."""

    def test_segments_and_text(self):
        state = make_resolver().resolve_state()
        assert [s.id for s in state.segments] == ["RECIPE", "ing.ING_NAME"]
        assert state.segments[1].values == ("Tomato", "Onion")
        assert state.output_text() == "Soup | Tomato + Onion"

    def test_output_actions_respect_show_when(self):
        assert [a.id for a in make_resolver().resolve_state().output_actions] == ["deleteRow"]
        reheat = make_resolver({"MP_IS_REHEAT": "Yes"}).resolve_state()
        assert [a.id for a in reheat.output_actions] == ["deleteRow", "openOverlay"]

    def test_active_prompt_is_first_incomplete(self):
        state = make_resolver().resolve_state()
        assert state.active_prompt_id == "qty"
        assert state.prompt("recipe").complete
        assert not state.prompt("recipe").visible
        assert state.prompt("types").complete

    def test_focused_number_field_holds_prompt(self):
        resolver = make_resolver({"QTY": "2"})
        assert resolver.resolve_state().active_prompt_id is None
        held = resolver.resolve_state("MEALS__QTY__r1", "NUMBER")
        assert held.active_prompt_id == "qty"
        assert held.prompt("qty").complete
        assert not held.prompt("qty").complete_for_prompting

    def test_focused_choice_field_does_not_hold(self):
        resolver = make_resolver({"QTY": "2"})
        assert resolver.resolve_state("MEALS__QTY__r1", "CHOICE").active_prompt_id is None

    def test_conditions_run_in_target_row_context(self):
        flow = dict(FLOW)
        flow["output"] = {"segments": [
            {"fieldRef": "ing.ING_NAME", "showWhen": {"fieldId": "ING_NAME", "equals": "Tomato"}},
            {"fieldRef": "RECIPE", "showWhen": {"fieldId": "SHOW_RECIPE", "equals": "yes"}},
        ]}
        state = make_resolver(record={"SHOW_RECIPE": "yes"}, flow=flow).resolve_state()
        assert [s.id for s in state.segments] == ["ing.ING_NAME", "RECIPE"]
        hidden = make_resolver(record={"SHOW_RECIPE": "no"}, flow=flow).resolve_state()
        assert [s.id for s in hidden.segments] == ["ing.ING_NAME"]

    def test_default_separator(self):
        assert RowFlowConfig.from_dict({}).output.separator == " | "


# =========================================================================
# Action plans
# =========================================================================


class TestActionPlans:
    """Tests for action effect planning."""

    def test_set_value_and_delete_reference_rows(self):
        plan = make_resolver({"MP_IS_REHEAT": "Yes"}).plan_action("resetLeftovers")
        assert plan.effects == [
            PlannedSetValue(group_key="MEALS", row_id="r1", field_id="MP_IS_REHEAT", value="No"),
            PlannedDeleteLineItems(group_key="MEALS::r1::TYPE", row_ids=("t1",)),
        ]

    def test_open_overlay_gated_by_when(self):
        assert make_resolver().plan_action("openOverlay").effects == []
        effects = make_resolver({"MP_IS_REHEAT": "Yes"}).plan_action("openOverlay").effects
        assert len(effects) == 1
        assert isinstance(effects[0], PlannedOpenOverlay)
        assert effects[0].key == "MEALS::r1::TYPE"
        assert effects[0].target_kind == "sub"

    def test_add_line_items_under_reference_group(self):
        effects = make_resolver().plan_action("addIngredients").effects
        assert effects == [
            PlannedAddLineItems(group_key="MEALS::r1::TYPE::t1::ING", preset={"ING_NAME": "Salt"}, count=2),
            PlannedCloseOverlay(),
        ]

    def test_delete_row(self):
        plan = make_resolver().plan_action("deleteRow")
        assert plan.effects == [PlannedDeleteRow(group_key="MEALS", row_id="r1")]
        assert plan.to_dict() == {
            "action_id": "deleteRow",
            "effects": [{"groupKey": "MEALS", "rowId": "r1", "type": "deleteRow"}],
        }

    def test_unknown_action(self):
        assert make_resolver().plan_action("nope") is None

    def test_module_level_helper(self):
        resolver = make_resolver()
        plan = resolve_row_flow_action_plan(
            resolver.config, "deleteRow", "MEALS", resolver.row, resolver.top, ["TYPE"]
        )
        assert plan.action.id == "deleteRow"

    def test_planned_effect_to_dict_drops_none(self):
        raw = planned_effect_to_dict(PlannedAddLineItems(group_key="G"))
        assert raw == {"groupKey": "G", "count": 1, "type": "addLineItems"}


class TestParsing:
    """Tests for row-flow config parsing."""

    def test_unknown_effects_are_skipped(self):
        config = RowFlowConfig.from_dict(FLOW)
        assert len(config.action("addIngredients").effects) == 2
        assert isinstance(config.action("resetLeftovers").effects[0], SetValueEffect)

    def test_segment_action_ids(self):
        raw = {"editAction": "openOverlay", "editActions": ["deleteRow", "openOverlay"]}
        assert segment_action_ids(raw) == ("openOverlay", "deleteRow")
