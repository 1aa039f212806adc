"""Tests for selection-effect resolution."""

import copy

import pytest

from formengine.domain.forms.data_sources import DataSourceCache
from formengine.domain.forms.definition import FormDefinition, SelectionEffect
from formengine.domain.forms.errors import DataSourceError
from formengine.domain.forms.selection_effects import (
    AddRows,
    ClearRows,
    DeleteRows,
    ReplaceAutoRows,
    SelectionContext,
    SelectionEffectCache,
    SelectionEffectResolver,
    SetValue,
    aggregate_entries,
    apply_scale,
    coerce_entries,
    mutation_to_dict,
    normalize_selections,
    resolve_preset,
    source_row_value,
)

DEFINITION = {
    "questions": [
        {
            "id": "MEAL",
            "type": "CHOICE",
            "options": ["Soup", "None"],
            "selectionEffects": [
                {
                    "type": "addLineItems",
                    "id": "addMain",
                    "groupId": "ITEMS",
                    "triggerValues": ["Soup"],
                    "preset": {"NAME": "$top.GUEST", "QTY": 1, "KIND": "main", "NOTE": "$row.MISSING"},
                },
                {"type": "setValue", "fieldId": "NOTE", "value": "$top.GUEST"},
                {"type": "deleteLineItems", "id": "del", "groupId": "ITEMS", "triggerValues": ["None"]},
                {"type": "addLineItems"},
            ],
        },
        {"id": "CATEGORY", "type": "CHOICE"},
        {
            "id": "ITEMS",
            "type": "LINE_ITEM_GROUP",
            "lineItemConfig": {
                "fields": [
                    {"id": "NAME", "type": "TEXT"},
                    {"id": "QTY", "type": "NUMBER"},
                    {
                        "id": "KIND",
                        "type": "CHOICE",
                        "options": ["main", "side"],
                        "optionFilter": {"dependsOn": "CATEGORY", "optionMap": {"veg": ["side"], "*": ["main", "side"]}},
                    },
                    {
                        "id": "RECIPE",
                        "type": "CHOICE",
                        "dataSource": {"id": "recipes", "mapping": {"value": "name"}},
                        "selectionEffects": [{
                            "type": "addLineItemsFromDataSource",
                            "id": "ing",
                            "groupId": "PARTS",
                            "dataField": "parts",
                        }],
                    },
                ],
                "subGroups": [{
                    "id": "PARTS",
                    "fields": [
                        {"id": "PART", "type": "TEXT"},
                        {"id": "AMOUNT", "type": "NUMBER"},
                    ],
                }],
            },
        },
    ],
}

RECIPE_ROWS = [
    {"name": "Stew", "parts": [{"PART": "salt", "AMOUNT": 1}, {"PART": "salt", "AMOUNT": 1}]},
    {"name": "Pie", "parts": '[{"PART": "flour", "AMOUNT": 2}]'},
]

ROW_CONTEXT = SelectionContext(context_id="ITEMS::r1", group_key="ITEMS", row_id="r1")


def make_definition():
    return FormDefinition.from_dict(DEFINITION)


def recipe_field(definition):
    return definition.question("ITEMS").line_item_config.field("RECIPE")


class ScriptedFetcher:
    def __init__(self, response=None, on_call=None):
        self.response = RECIPE_ROWS if response is None else response
        self.on_call = on_call
        self.calls = 0

    async def __call__(self, config, language):
        self.calls += 1
        if self.on_call is not None:
            self.on_call()
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


# =========================================================================
# Helpers
# =========================================================================


class TestHelpers:
    """Tests for selection, preset and entry helpers."""

    def test_normalize_selections(self):
        assert normalize_selections(None) == []
        assert normalize_selections([" a ", "b", "a", ""]) == ["a", "b"]
        assert normalize_selections("x") == ["x"]

    def test_resolve_preset_tokens(self):
        context = SelectionContext(row_id="r1", row_values={"SIZE": "L"}, top_values={"GUEST": "Ann"})
        preset = {"A": "$row.SIZE", "B": "$top.GUEST", "C": "$top.NOPE", "D": 2, "E": ["x", " "]}
        assert resolve_preset(preset, context) == {"A": "L", "B": "Ann", "D": 2, "E": ["x"]}

    def test_coerce_entries(self):
        assert coerce_entries('[{"a": 1}, 2]') == [{"a": 1}, {"value": 2}]
        assert coerce_entries("one\ntwo") == [{"value": "one"}, {"value": "two"}]
        assert coerce_entries({"a": 1}) == [{"a": 1}]
        assert coerce_entries("") == []

    def test_source_row_value_is_case_tolerant(self):
        assert source_row_value({"Serves": 4}, "serves") == 4
        assert source_row_value({"meta": {"serves": 2}}, "meta.serves") == 2

    def test_aggregate_sums_numeric_fields_by_key(self):
        fields = make_definition().group_config("ITEMS::r1::PARTS").fields
        effect = SelectionEffect.from_dict({"type": "addLineItemsFromDataSource", "groupId": "PARTS"})
        entries = [
            {"PART": "salt", "AMOUNT": 1},
            {"PART": "salt", "AMOUNT": 2.5},
            {"PART": "oil", "AMOUNT": 1},
        ]
        assert aggregate_entries(entries, effect, fields) == [
            {"PART": "salt", "AMOUNT": "3.50"},
            {"PART": "oil", "AMOUNT": "1"},
        ]

    def test_apply_scale_uses_row_multiplier_over_baseline(self):
        fields = make_definition().group_config("ITEMS::r1::PARTS").fields
        effect = SelectionEffect.from_dict({
            "type": "addLineItemsFromDataSource",
            "groupId": "PARTS",
            "rowMultiplierFieldId": "SERVINGS",
            "dataSourceMultiplierField": "serves",
        })
        scaled = apply_scale(
            [{"PART": "salt", "AMOUNT": 1.5}], effect, {"SERVINGS": "4"}, {"Serves": 2}, fields
        )
        assert scaled == [{"PART": "salt", "AMOUNT": 3.0}]

    def test_mutation_to_dict(self):
        raw = mutation_to_dict(AddRows(group_id="G", group_key="G", presets=({"A": 1},)))
        assert raw["type"] == "addRows"
        assert raw["presets"] == [{"A": 1}]


class TestSelectionEffectCache:
    """Tests for selection diffs and fetch tokens."""

    def test_diff_tracks_known_selections(self):
        cache = SelectionEffectCache()
        first = cache.diff("Q", "c1", ["a", "b"])
        assert first.newly_selected == ("a", "b")
        cache.context("Q", "c1")["a"] = object()
        second = cache.diff("Q", "c1", ["b"])
        assert second.removed == ("a",)
        assert second.newly_selected == ("b",)

    def test_force_reset_forgets_context(self):
        cache = SelectionEffectCache()
        cache.context("Q", "c1")["a"] = object()
        diff = cache.diff("Q", "c1", ["a"], force_reset=True)
        assert diff.removed == ("a",)
        assert diff.newly_selected == ("a",)

    def test_tokens(self):
        cache = SelectionEffectCache()
        token = cache.next_token("Q")
        assert cache.is_current("Q", token)
        cache.next_token("Q")
        assert not cache.is_current("Q", token)
        cache.clear("Q")
        assert cache.token("Q") == 0


# =========================================================================
# Synchronous effects
# =========================================================================


class TestPlan:
    """Tests for addLineItems, setValue and deleteLineItems planning."""

    def plan(self, value, **context_kwargs):
        definition = make_definition()
        context = SelectionContext(top_values={"GUEST": "Ann"}, **context_kwargs)
        return SelectionEffectResolver(definition).plan(definition.question("MEAL"), value, context)

    def test_malformed_effect_is_dropped_when_parsing(self):
        assert len(make_definition().question("MEAL").selection_effects) == 3

    def test_trigger_value_adds_row(self):
        plan = self.plan("Soup")
        assert plan.mutations == [
            AddRows(
                group_id="ITEMS",
                group_key="ITEMS",
                presets=({"NAME": "Ann", "QTY": 1, "KIND": "main"},),
                effect_id="addMain",
            ),
            SetValue(field_id="NOTE", value="Ann"),
        ]
        assert plan.pending == []

    def test_other_trigger_deletes_rows(self):
        mutations = self.plan("None").mutations
        assert DeleteRows(group_id="ITEMS", group_key="ITEMS", effect_id="del") in mutations
        assert not any(isinstance(m, AddRows) for m in mutations)

    def test_effect_override_wins(self):
        plan = self.plan("Soup", effect_overrides={"addMain": {"QTY": 3}})
        assert plan.mutations[0].presets[0]["QTY"] == 3

    def test_option_filter_rejects_preset(self):
        definition = make_definition()
        context = SelectionContext(top_values={"GUEST": "Ann", "CATEGORY": "veg"})
        plan = SelectionEffectResolver(definition).plan(definition.question("MEAL"), "Soup", context)
        assert [type(m) for m in plan.mutations] == [SetValue]

    def test_data_source_effect_is_pending(self):
        definition = make_definition()
        plan = SelectionEffectResolver(definition).plan(recipe_field(definition), "Stew", ROW_CONTEXT)
        assert plan.mutations == []
        assert len(plan.pending) == 1
        assert plan.pending[0].selections == ("Stew",)

    def test_sub_group_target_resolves_under_context_row(self):
        target = SelectionEffectResolver(make_definition()).resolve_target_group("PARTS", ROW_CONTEXT)
        assert target.group_key == "ITEMS::r1::PARTS"


# =========================================================================
# Data-source effects
# =========================================================================


class TestDataSourceEffects:
    """Tests for fetch, match, aggregation and failure handling."""

    def make_resolver(self, fetcher):
        return SelectionEffectResolver(make_definition(), data_sources=DataSourceCache(fetcher))

    @pytest.mark.asyncio
    async def test_selected_recipe_replaces_auto_rows(self):
        resolver = self.make_resolver(ScriptedFetcher())
        mutations = await resolver.handle(recipe_field(resolver.definition), "Stew", ROW_CONTEXT)
        assert len(mutations) == 1
        replace = mutations[0]
        assert isinstance(replace, ReplaceAutoRows)
        assert replace.group_key == "ITEMS::r1::PARTS"
        assert replace.context_id == "ITEMS::r1"
        assert replace.presets == ({"PART": "salt", "AMOUNT": "2"},)
        assert replace.numeric_targets == ("AMOUNT",)
        assert replace.key_fields == ("PART",)

    @pytest.mark.asyncio
    async def test_adding_selection_reuses_cached_entries(self):
        fetcher = ScriptedFetcher()
        resolver = self.make_resolver(fetcher)
        question = recipe_field(resolver.definition)
        await resolver.handle(question, "Stew", ROW_CONTEXT)
        mutations = await resolver.handle(question, ["Stew", "Pie"], ROW_CONTEXT)
        assert mutations[0].presets == (
            {"PART": "salt", "AMOUNT": "2"},
            {"PART": "flour", "AMOUNT": "2"},
        )
        assert fetcher.calls == 1

    @pytest.mark.asyncio
    async def test_clearing_selection_clears_rows(self):
        resolver = self.make_resolver(ScriptedFetcher())
        question = recipe_field(resolver.definition)
        await resolver.handle(question, "Stew", ROW_CONTEXT)
        mutations = await resolver.handle(question, "", ROW_CONTEXT)
        assert mutations == [ClearRows(group_id="PARTS", group_key="ITEMS::r1::PARTS", context_id="ITEMS::r1")]

    @pytest.mark.asyncio
    async def test_failed_fetch_produces_no_mutations(self):
        resolver = self.make_resolver(ScriptedFetcher(DataSourceError("recipes", "offline")))
        assert await resolver.handle(recipe_field(resolver.definition), "Stew", ROW_CONTEXT) == []

    @pytest.mark.asyncio
    async def test_stale_response_is_discarded(self):
        definition = make_definition()
        cache = SelectionEffectCache()
        fetcher = ScriptedFetcher(on_call=lambda: cache.next_token("RECIPE"))
        resolver = SelectionEffectResolver(definition, cache=cache, data_sources=DataSourceCache(fetcher))
        assert await resolver.handle(recipe_field(definition), "Stew", ROW_CONTEXT) == []

    @pytest.mark.asyncio
    async def test_empty_response_clears_context(self):
        resolver = self.make_resolver(ScriptedFetcher({"items": []}))
        mutations = await resolver.handle(recipe_field(resolver.definition), "Stew", ROW_CONTEXT)
        assert [type(m) for m in mutations] == [ClearRows]

    @pytest.mark.asyncio
    async def test_unmatched_selection_renders_nothing_known(self):
        resolver = self.make_resolver(ScriptedFetcher())
        mutations = await resolver.handle(recipe_field(resolver.definition), "Curry", ROW_CONTEXT)
        assert [type(m) for m in mutations] == [ClearRows]

    @pytest.mark.asyncio
    async def test_without_data_source_cache(self):
        definition = make_definition()
        resolver = SelectionEffectResolver(definition)
        assert await resolver.handle(recipe_field(definition), "Stew", ROW_CONTEXT) == []


# =========================================================================
# Option filters on populated rows
# =========================================================================


FILTERED_ROWS = [
    {"name": "Cake", "parts": [{"PART": "sugar", "AMOUNT": 1}, {"PART": "flour", "AMOUNT": 1}]},
    {"name": "Poison", "parts": [{"PART": "arsenic", "AMOUNT": 1}, {"PART": "salt", "AMOUNT": 1}]},
]


def make_filtered_definition(option_filter):
    raw = copy.deepcopy(DEFINITION)
    parts = raw["questions"][2]["lineItemConfig"]["subGroups"][0]
    parts["fields"][0] = {
        "id": "PART",
        "type": "CHOICE",
        "options": ["salt", "flour", "sugar"],
        "optionFilter": option_filter,
    }
    return FormDefinition.from_dict(raw)


class TestPopulatedRowsRespectOptionFilters:
    """Rows added from a data source only carry values the field menu allows."""

    async def populate(self, option_filter, selection, row_values):
        definition = make_filtered_definition(option_filter)
        resolver = SelectionEffectResolver(definition, data_sources=DataSourceCache(ScriptedFetcher(FILTERED_ROWS)))
        context = SelectionContext(context_id="ITEMS::r1", group_key="ITEMS", row_id="r1", row_values=row_values)
        mutations = await resolver.handle(recipe_field(definition), selection, context)
        assert [type(m) for m in mutations] == [ReplaceAutoRows]
        return mutations[0].presets

    @pytest.mark.asyncio
    async def test_disallowed_entry_is_dropped(self):
        option_filter = {"dependsOn": "DIET", "optionMap": {"savory": ["salt", "flour"], "*": ["salt", "flour", "sugar"]}}
        presets = await self.populate(option_filter, "Cake", {"DIET": "savory"})
        assert presets == ({"PART": "flour", "AMOUNT": "1"},)

    @pytest.mark.asyncio
    async def test_allowed_entries_are_kept(self):
        option_filter = {"dependsOn": "DIET", "optionMap": {"savory": ["salt", "flour"], "*": ["salt", "flour", "sugar"]}}
        presets = await self.populate(option_filter, "Cake", {"DIET": "sweet"})
        assert presets == ({"PART": "sugar", "AMOUNT": "1"}, {"PART": "flour", "AMOUNT": "1"})

    @pytest.mark.asyncio
    async def test_filter_without_map_or_rows_limits_to_field_options(self):
        option_filter = {"dependsOn": "DIET", "dataSourceField": "tags"}
        presets = await self.populate(option_filter, "Poison", {"DIET": "savory"})
        assert presets == ({"PART": "salt", "AMOUNT": "1"},)
