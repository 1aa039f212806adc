"""Selection-effect resolution.

When a trigger field changes, its selection effects turn the new value
into row mutations for line-item groups. Mutations are plain instructions
(add, replace auto rows, clear, delete, set value); applying them is the
caller's job.

Data-source effects are asynchronous. Each fetch takes a token from the
SelectionEffectCache; when a newer fetch for the same question has started
by the time a response arrives, the response is discarded.

INVARIANTS:
- An effect with trigger values only fires when a selected value is one
  of them; an effect without trigger values always fires.
- Rows produced from a data source never carry a value that the target
  field's own option filter rejects for the row's dependencies.
- A failed data-source fetch produces no mutations.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from formengine.domain.forms.conditions import evaluate
from formengine.domain.forms.data_sources import DataSourceCache, data_source_rows
from formengine.domain.forms.definition import (
    DataSourceConfig,
    FieldConfig,
    FormDefinition,
    LineItemGroupConfig,
    QuestionType,
    SelectionEffect,
    SelectionEffectType,
)
from formengine.domain.forms.group_path import build_subgroup_key
from formengine.domain.forms.lookup import FieldLookup, MappingLookup, RowLookup, TopLookup
from formengine.domain.forms.option_filter import compute_allowed_options, dependency_tokens, to_dependency_value
from formengine.domain.forms.values import format_number, to_number

logger = logging.getLogger(__name__)

GLOBAL_CONTEXT_ID = "__global__"
ROW_CONTEXT_PREFIX = "$row."
TOP_CONTEXT_PREFIX = "$top."
ROW_CONTEXT_KEY = "__ckRowContext"
ALL_NUMERIC_KEY = "__all_numeric__"

Preset = Dict[str, Any]


# =========================================================================
# Mutations
# =========================================================================


@dataclass(frozen=True)
class AddRows:
    group_id: str
    group_key: str
    presets: Tuple[Preset, ...]
    effect_id: Optional[str] = None
    hide_remove_button: bool = False
    type: str = "addRows"


@dataclass(frozen=True)
class ReplaceAutoRows:
    """Replace the rows previously generated for one effect context."""

    group_id: str
    group_key: str
    presets: Tuple[Preset, ...]
    context_id: str
    numeric_targets: Tuple[str, ...] = ()
    key_fields: Tuple[str, ...] = ()
    effect_id: Optional[str] = None
    hide_remove_button: bool = False
    type: str = "replaceAutoRows"


@dataclass(frozen=True)
class ClearRows:
    group_id: str
    group_key: str
    context_id: str
    type: str = "clearRows"


@dataclass(frozen=True)
class DeleteRows:
    group_id: str
    group_key: str
    effect_id: Optional[str] = None
    parent_group_key: Optional[str] = None
    parent_row_id: Optional[str] = None
    type: str = "deleteRows"


@dataclass(frozen=True)
class SetValue:
    field_id: str
    value: Any = None
    group_key: Optional[str] = None
    row_id: Optional[str] = None
    type: str = "setValue"


RowMutation = Union[AddRows, ReplaceAutoRows, ClearRows, DeleteRows, SetValue]


def mutation_to_dict(mutation: RowMutation) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key in mutation.__dataclass_fields__:
        value = getattr(mutation, key)
        result[key] = list(value) if isinstance(value, tuple) else value
    return result


# =========================================================================
# Context and cache
# =========================================================================


@dataclass(frozen=True)
class SelectionContext:
    """Where a trigger value changed.

    Attributes:
        context_id: Cache context (one per triggering row, or global)
        group_key: Group key of the triggering row, for row-level triggers
        row_id: Id of the triggering row
        row_values: Values of the triggering row (`$row.FIELD` presets)
        top_values: Top-level record values (`$top.FIELD` presets)
        effect_overrides: Per-effect preset overrides keyed by effect id
        force_context_reset: Forget every known selection for this context
    """

    context_id: str = GLOBAL_CONTEXT_ID
    group_key: Optional[str] = None
    row_id: Optional[str] = None
    row_values: Mapping[str, Any] = field(default_factory=dict)
    top_values: Mapping[str, Any] = field(default_factory=dict)
    effect_overrides: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    force_context_reset: bool = False

    def lookup(self) -> FieldLookup:
        top = TopLookup(self.top_values)
        if self.row_id is None:
            return top
        return RowLookup(self.row_values, top, group_key=self.group_key, row_id=self.row_id)


@dataclass
class SelectionCacheEntry:
    value: str
    entries: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class SelectionDiff:
    current: Tuple[str, ...]
    newly_selected: Tuple[str, ...]
    removed: Tuple[str, ...]


class SelectionEffectCache:
    """Known selections per (question, context) and a fetch token per question."""

    def __init__(self):
        self._contexts: Dict[str, Dict[str, Dict[str, SelectionCacheEntry]]] = {}
        self._tokens: Dict[str, int] = {}

    def context(self, question_id: str, context_id: Optional[str]) -> Dict[str, SelectionCacheEntry]:
        contexts = self._contexts.setdefault(question_id, {})
        return contexts.setdefault(context_id or GLOBAL_CONTEXT_ID, {})

    def next_token(self, question_id: str) -> int:
        token = self._tokens.get(question_id, 0) + 1
        self._tokens[question_id] = token
        return token

    def token(self, question_id: str) -> int:
        return self._tokens.get(question_id, 0)

    def is_current(self, question_id: str, token: int) -> bool:
        return self._tokens.get(question_id, 0) == token

    def diff(
        self, question_id: str, context_id: str, selections: Sequence[str], force_reset: bool = False
    ) -> SelectionDiff:
        known = self.context(question_id, context_id)
        previous = list(known.keys())
        if force_reset:
            known.clear()
            removed = previous
        else:
            removed = [s for s in previous if s not in selections]
        newly = [s for s in selections if s not in known]
        return SelectionDiff(current=tuple(selections), newly_selected=tuple(newly), removed=tuple(removed))

    def clear(self, question_id: Optional[str] = None) -> None:
        if question_id is None:
            self._contexts.clear()
            self._tokens.clear()
        else:
            self._contexts.pop(question_id, None)
            self._tokens.pop(question_id, None)


# =========================================================================
# Presets
# =========================================================================


def normalize_selections(value: Any) -> List[str]:
    """Distinct non-blank selected values, in order."""
    if value is None or value == "":
        return []
    items = value if isinstance(value, (list, tuple)) else [value]
    result: List[str] = []
    for item in items:
        text = "" if item is None else str(item).strip()
        if text and text not in result:
            result.append(text)
    return result


def effect_applies(effect: SelectionEffect, value: Any) -> bool:
    if not effect.trigger_values:
        return True
    return any(v in effect.trigger_values for v in normalize_selections(value))


def _as_preset_value(raw: Any) -> Any:
    if raw is None:
        return None
    if isinstance(raw, (str, bool, int, float)):
        return raw
    if isinstance(raw, (list, tuple)):
        return [str(v).strip() for v in raw if v is not None and str(v).strip()]
    return str(raw)


def resolve_preset_value(raw: Any, context: SelectionContext) -> Any:
    """Resolve `$row.FIELD` / `$top.FIELD` tokens; None drops the key."""
    if not isinstance(raw, str):
        return _as_preset_value(raw)
    text = raw.strip()
    if text.startswith(ROW_CONTEXT_PREFIX):
        field_id = text[len(ROW_CONTEXT_PREFIX):].strip()
        return _as_preset_value(context.row_values.get(field_id)) if field_id else None
    if text.startswith(TOP_CONTEXT_PREFIX):
        field_id = text[len(TOP_CONTEXT_PREFIX):].strip()
        return _as_preset_value(context.top_values.get(field_id)) if field_id else None
    return raw


def resolve_preset(preset: Optional[Mapping[str, Any]], context: SelectionContext) -> Preset:
    resolved: Preset = {}
    for key, raw in (preset or {}).items():
        value = resolve_preset_value(raw, context)
        if value is not None:
            resolved[str(key)] = value
    return resolved


def merge_override(preset: Preset, override: Optional[Mapping[str, Any]]) -> Preset:
    merged = dict(preset)
    for key, value in (override or {}).items():
        if value is not None:
            merged[key] = value
    return merged


def preset_passes_option_filters(
    preset: Mapping[str, Any],
    fields: Sequence[FieldConfig],
    row_values: Optional[Mapping[str, Any]] = None,
    top_values: Optional[Mapping[str, Any]] = None,
) -> bool:
    """True when every preset value survives its field's option filter.

    Dependencies resolve from the preset, then the context row, then the
    record. Every filter is checked, so a preset never carries a value the
    field's own menu would reject.
    """
    lookup = MappingLookup({**(top_values or {}), **(row_values or {}), **preset})
    for field_config in fields:
        option_filter = field_config.option_filter
        if option_filter is None:
            continue
        raw = preset.get(field_config.id)
        if raw is None or raw == "":
            continue
        dep_values = [to_dependency_value(lookup.get_value(dep)) for dep in option_filter.depends_on]
        if option_filter.bypass_values and any(
            token in option_filter.bypass_values for token in dependency_tokens(dep_values)
        ):
            continue
        allowed = set(compute_allowed_options(
            option_filter, field_config.options, dep_values, field_config.options_raw
        ))
        candidates = raw if isinstance(raw, (list, tuple)) else [raw]
        if not all(str(v) in allowed for v in candidates):
            return False
    return True


# =========================================================================
# Data-source entries
# =========================================================================


def coerce_entries(payload: Any) -> List[Dict[str, Any]]:
    """Entries of a data-field payload: list, JSON text, newline list or mapping."""
    if not payload:
        return []
    if isinstance(payload, (list, tuple)):
        return [dict(item) if isinstance(item, Mapping) else {"value": item} for item in payload]
    if isinstance(payload, str):
        text = payload.strip()
        if not text:
            return []
        try:
            parsed = json.loads(text)
        except ValueError:
            return [{"value": part.strip()} for part in text.splitlines() if part.strip()]
        if isinstance(parsed, list):
            return coerce_entries(parsed)
        if isinstance(parsed, Mapping):
            return [dict(parsed)]
        return []
    if isinstance(payload, Mapping):
        return [dict(payload)]
    return []


def value_at_path(source: Any, path: Optional[str]) -> Any:
    if not path:
        return None
    current = source
    for segment in (s.strip() for s in path.split(".") if s.strip()):
        if not isinstance(current, Mapping):
            return None
        current = current.get(segment)
    return current


def _set_at_path(target: Dict[str, Any], path: str, value: Any) -> None:
    segments = [s.strip() for s in path.split(".") if s.strip()]
    if not segments:
        return
    current = target
    for segment in segments[:-1]:
        nested = current.get(segment)
        if not isinstance(nested, dict):
            nested = dict(nested) if isinstance(nested, Mapping) else {}
            current[segment] = nested
        current = nested
    current[segments[-1]] = value


def source_row_value(row: Mapping[str, Any], path: Optional[str]) -> Any:
    """Dotted-path value, falling back to a case-insensitive top-level key."""
    direct = value_at_path(row, path)
    if direct is not None or not path:
        return direct
    wanted = path.lower()
    for key, value in row.items():
        if str(key).lower() == wanted:
            return value
    return None


def _mapping_value(entry: Mapping[str, Any], source_path: str) -> Any:
    if source_path.startswith(ROW_CONTEXT_PREFIX):
        row_field = source_path[len(ROW_CONTEXT_PREFIX):].strip()
        row_context = entry.get(ROW_CONTEXT_KEY)
        return row_context.get(row_field) if row_field and isinstance(row_context, Mapping) else None
    return value_at_path(entry, source_path)


def build_entry_preset(entry: Mapping[str, Any], effect: SelectionEffect, line_field_ids: Sequence[str]) -> Preset:
    mapping = effect.line_item_mapping
    targets = list(mapping.keys()) if mapping else list(line_field_ids)
    preset: Preset = {}
    for field_id in targets:
        raw = _mapping_value(entry, mapping.get(field_id) or field_id)
        if raw is None or raw == "":
            continue
        is_number = isinstance(raw, (int, float)) and not isinstance(raw, bool)
        preset[field_id] = raw if is_number else str(raw)
    return preset


def _numeric_field_ids(fields: Sequence[FieldConfig]) -> List[str]:
    return [f.id for f in fields if f.type == QuestionType.NUMBER]


def numeric_targets(effect: SelectionEffect, fields: Sequence[FieldConfig]) -> List[str]:
    if effect.scale_numeric_fields:
        return list(effect.scale_numeric_fields)
    if effect.aggregate_numeric_fields:
        return list(effect.aggregate_numeric_fields)
    return _numeric_field_ids(fields)


def aggregation_fields(effect: SelectionEffect, fields: Sequence[FieldConfig]) -> Tuple[List[str], List[str]]:
    """(numeric field ids summed, key field ids) for aggregation."""
    numeric = list(effect.aggregate_numeric_fields) or _numeric_field_ids(fields)
    keys = list(effect.aggregate_by) or [f.id for f in fields if f.id not in numeric]
    return numeric, keys


def scale_factor(effect: SelectionEffect, row_values: Mapping[str, Any], source_row: Mapping[str, Any]) -> float:
    if not effect.row_multiplier_field_id:
        return 1.0
    desired_raw = row_values.get(effect.row_multiplier_field_id)
    if isinstance(desired_raw, (list, tuple)):
        desired_raw = desired_raw[0] if desired_raw else None
    desired = to_number(desired_raw)
    if desired is None:
        return 1.0
    if not effect.data_source_multiplier_field:
        return desired
    baseline = to_number(source_row_value(source_row, effect.data_source_multiplier_field))
    if not baseline:
        logger.debug(
            f"Scale baseline '{effect.data_source_multiplier_field}' missing for '{effect.group_id}'; "
            f"using multiplier {desired}"
        )
        return desired
    return desired / baseline


def apply_scale(
    entries: Sequence[Mapping[str, Any]],
    effect: SelectionEffect,
    row_values: Mapping[str, Any],
    source_row: Mapping[str, Any],
    fields: Sequence[FieldConfig],
) -> List[Dict[str, Any]]:
    factor = scale_factor(effect, row_values, source_row)
    targets = numeric_targets(effect, fields)
    scaled: List[Dict[str, Any]] = []
    for entry in entries:
        clone = dict(entry)
        if factor != 1 and targets:
            for field_id in targets:
                path = effect.line_item_mapping.get(field_id) or field_id
                current = to_number(value_at_path(clone, path))
                if current is not None:
                    _set_at_path(clone, path, round(current * factor, 2))
        scaled.append(clone)
    return scaled


def _key_part(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return format_number(float(value))
    return str(value)


def aggregate_entries(
    entries: Sequence[Mapping[str, Any]], effect: SelectionEffect, fields: Sequence[FieldConfig]
) -> List[Preset]:
    """Presets bucketed by key fields, numeric fields summed."""
    numeric, key_fields = aggregation_fields(effect, fields)
    line_field_ids = [f.id for f in fields]
    buckets: Dict[str, Preset] = {}
    for entry in entries:
        preset = build_entry_preset(entry, effect, line_field_ids)
        if key_fields:
            key = "||".join(f"{fid}::{_key_part(preset.get(fid))}" for fid in key_fields)
        else:
            key = ALL_NUMERIC_KEY
        if key not in buckets:
            buckets[key] = dict(preset)
            continue
        target = buckets[key]
        for field_id in numeric:
            current = to_number(target.get(field_id)) or 0.0
            incoming = to_number(preset.get(field_id)) or 0.0
            target[field_id] = current + incoming

    presets: List[Preset] = []
    for preset in buckets.values():
        for field_id in numeric:
            number = to_number(preset.get(field_id))
            if number is not None:
                preset[field_id] = format_number(number)
        presets.append(preset)
    return presets


# =========================================================================
# Resolver
# =========================================================================


@dataclass(frozen=True)
class TargetGroup:
    config: LineItemGroupConfig
    group_key: str


@dataclass
class PendingDataSourceEffect:
    """A data-source effect waiting for its fetch."""

    question: FieldConfig
    effect: SelectionEffect
    context: SelectionContext
    selections: Tuple[str, ...]
    diff: SelectionDiff


@dataclass
class SelectionEffectPlan:
    mutations: List[RowMutation] = field(default_factory=list)
    pending: List[PendingDataSourceEffect] = field(default_factory=list)


class SelectionEffectResolver:
    """Turns trigger-field changes into row mutations.

    Args:
        definition: Parsed form definition
        cache: Known selections and fetch tokens (owned by the caller)
        data_sources: Memoised data-source access; None skips data-source effects
        language: Language code used for data-source lookups
        today: Reference day for `when` clauses
    """

    def __init__(
        self,
        definition: FormDefinition,
        cache: Optional[SelectionEffectCache] = None,
        data_sources: Optional[DataSourceCache] = None,
        language: Optional[str] = None,
        today: Optional[date] = None,
    ):
        self.definition = definition
        self.cache = cache if cache is not None else SelectionEffectCache()
        self.data_sources = data_sources
        self.language = language
        self.today = today

    def resolve_target_group(self, group_id: str, context: SelectionContext) -> Optional[TargetGroup]:
        """Direct question, then a sub-group of the context group, then any sub-group with that id."""
        direct = self.definition.question(group_id)
        if direct is not None and direct.line_item_config is not None:
            return TargetGroup(direct.line_item_config, group_id)
        if context.group_key and context.row_id:
            context_config = self.definition.group_config(context.group_key)
            sub = context_config.sub_group(group_id) if context_config else None
            if sub is not None:
                return TargetGroup(sub, build_subgroup_key(context.group_key, context.row_id, group_id))
        for question in self.definition.line_item_questions:
            sub = question.line_item_config.sub_group(group_id)
            if sub is None:
                continue
            if context.group_key and context.row_id:
                return TargetGroup(sub, build_subgroup_key(context.group_key, context.row_id, group_id))
            return TargetGroup(sub, group_id)
        return None

    def _group_key(self, group_id: str, context: SelectionContext) -> str:
        target = self.resolve_target_group(group_id, context)
        return target.group_key if target else group_id

    # ---------------------------------------------------------------------
    # Synchronous effects
    # ---------------------------------------------------------------------

    def plan(self, question: FieldConfig, value: Any, context: Optional[SelectionContext] = None) -> SelectionEffectPlan:
        """Mutations for synchronous effects plus pending data-source effects.

        Args:
            question: Trigger field (top-level question or row field)
            value: New value of the trigger field
            context: Where the change happened

        Returns:
            SelectionEffectPlan
        """
        context = context or SelectionContext()
        result = SelectionEffectPlan()
        if not question.selection_effects:
            return result
        selections = normalize_selections(value)
        diff = self.cache.diff(question.id, context.context_id, selections, context.force_context_reset)
        lookup = context.lookup()
        for effect in question.selection_effects:
            if not effect_applies(effect, value):
                continue
            if effect.when is not None and not evaluate(effect.when, lookup, self.today):
                continue
            if effect.type == SelectionEffectType.ADD_LINE_ITEMS:
                result.mutations.extend(self._add_line_items(effect, context))
            elif effect.type == SelectionEffectType.DELETE_LINE_ITEMS:
                result.mutations.append(DeleteRows(
                    group_id=effect.group_id,
                    group_key=self._group_key(effect.group_id, context),
                    effect_id=effect.target_effect_id or effect.id,
                    parent_group_key=context.group_key,
                    parent_row_id=context.row_id,
                ))
            elif effect.type == SelectionEffectType.SET_VALUE:
                result.mutations.append(SetValue(
                    field_id=effect.field_id,
                    value=resolve_preset_value(effect.value, context),
                    group_key=context.group_key,
                    row_id=context.row_id,
                ))
            elif effect.type == SelectionEffectType.ADD_LINE_ITEMS_FROM_DATA_SOURCE:
                result.pending.append(PendingDataSourceEffect(
                    question=question, effect=effect, context=context,
                    selections=tuple(selections), diff=diff,
                ))
            else:
                raise TypeError(f"Unhandled selection effect type: {effect.type}")
        return result

    def _add_line_items(self, effect: SelectionEffect, context: SelectionContext) -> List[RowMutation]:
        preset = merge_override(
            resolve_preset(effect.preset, context),
            context.effect_overrides.get(effect.id) if effect.id else None,
        )
        target = self.resolve_target_group(effect.group_id, context)
        if target is not None and target.config.fields:
            if not preset_passes_option_filters(preset, target.config.fields, context.row_values, context.top_values):
                logger.info(f"Selection effect addLineItems on '{effect.group_id}' skipped by option filter")
                return []
        return [AddRows(
            group_id=effect.group_id,
            group_key=target.group_key if target else effect.group_id,
            presets=(preset,),
            effect_id=effect.id,
            hide_remove_button=effect.hide_remove_button,
        )]

    # ---------------------------------------------------------------------
    # Data-source effects
    # ---------------------------------------------------------------------

    def _render(self, pending: PendingDataSourceEffect, target: TargetGroup) -> List[RowMutation]:
        effect, context = pending.effect, pending.context
        known = self.cache.context(pending.question.id, context.context_id)
        entries = [entry for cached in known.values() for entry in cached.entries]
        if not entries:
            if not effect.clear_group_before_add:
                return []
            return [ClearRows(group_id=effect.group_id, group_key=target.group_key, context_id=context.context_id)]
        override = context.effect_overrides.get(effect.id) if effect.id else None
        presets = [merge_override(p, override) for p in aggregate_entries(entries, effect, target.config.fields)]
        _, key_fields = aggregation_fields(effect, target.config.fields)
        return [ReplaceAutoRows(
            group_id=effect.group_id,
            group_key=target.group_key,
            presets=tuple(presets),
            context_id=context.context_id,
            numeric_targets=tuple(numeric_targets(effect, target.config.fields)),
            key_fields=tuple(key_fields),
            effect_id=effect.id,
            hide_remove_button=effect.hide_remove_button,
        )]

    def _lookup_field(self, effect: SelectionEffect, question: FieldConfig, sample: Mapping[str, Any]) -> str:
        if effect.lookup_field:
            return effect.lookup_field
        mapping = question.data_source.mapping if question.data_source else {}
        if mapping.get("value"):
            return mapping["value"]
        if mapping.get("id"):
            return mapping["id"]
        return next(iter(sample.keys()), "")

    def _entries_for(
        self,
        pending: PendingDataSourceEffect,
        target: TargetGroup,
        source_row: Mapping[str, Any],
    ) -> List[Dict[str, Any]]:
        effect, context = pending.effect, pending.context
        payload = source_row.get(effect.data_field) if effect.data_field else source_row
        entries = coerce_entries(payload)
        if not entries:
            return []
        fields = target.config.fields
        scaled = apply_scale(entries, effect, context.row_values, source_row, fields)
        if context.row_id is not None:
            snapshot = dict(context.row_values)
            scaled = [{**entry, ROW_CONTEXT_KEY: snapshot} for entry in scaled]
        if not any(f.option_filter for f in fields):
            return scaled
        override = context.effect_overrides.get(effect.id) if effect.id else None
        line_field_ids = [f.id for f in fields]
        kept = []
        for entry in scaled:
            preset = merge_override(build_entry_preset(entry, effect, line_field_ids), override)
            row_values = entry.get(ROW_CONTEXT_KEY) or context.row_values
            if preset_passes_option_filters(preset, fields, row_values, context.top_values):
                kept.append(entry)
            else:
                logger.debug(f"Data-source entry for '{effect.group_id}' filtered by option filter: {preset}")
        return kept

    async def resolve_data_source(self, pending: PendingDataSourceEffect) -> List[RowMutation]:
        """Fetch, match and aggregate one data-source effect.

        Returns:
            Mutations, or an empty list when the fetch failed or was superseded
        """
        effect, question, context = pending.effect, pending.question, pending.context
        source: Optional[DataSourceConfig] = effect.data_source or question.data_source
        if source is None:
            logger.warning(f"Selection effect on '{question.id}' has no data source")
            return []
        target = self.resolve_target_group(effect.group_id, context)
        if target is None or not target.config.fields:
            logger.warning(f"Selection effect target group '{effect.group_id}' missing or has no fields")
            return []

        known = self.cache.context(question.id, context.context_id)
        for removed in pending.diff.removed:
            known.pop(removed, None)
        if not pending.selections:
            known.clear()
            return self._render(pending, target)
        missing = [s for s in pending.selections if s not in known]
        if not missing:
            return self._render(pending, target)
        if self.data_sources is None:
            logger.warning(f"No data source cache configured; skipping effect on '{question.id}'")
            return []

        token = self.cache.next_token(question.id)
        response = await self.data_sources.fetch(source, self.language)
        if not self.cache.is_current(question.id, token):
            logger.debug(f"Discarding stale data-source result for '{question.id}' (token {token})")
            return []
        if response is None:
            logger.warning(f"Data source '{source.cache_id}' unavailable; rows for '{question.id}' left untouched")
            return []

        rows = data_source_rows(response)
        if not rows:
            logger.warning(f"Data source '{source.cache_id}' returned no rows for '{question.id}'")
            known.clear()
            return self._render(pending, target)
        lookup_field = self._lookup_field(effect, question, rows[0])
        if not lookup_field:
            logger.warning(f"Unable to resolve lookup field for selection effect on '{question.id}'")
            return []

        for selected in missing:
            wanted = selected.lower()
            row = next(
                (r for r in rows if str(r.get(lookup_field) or "").strip().lower() == wanted),
                None,
            )
            if row is None:
                logger.debug(f"No data-source row matches '{selected}' on '{lookup_field}'")
                known.pop(selected, None)
                continue
            entries = self._entries_for(pending, target, row)
            if not entries:
                known.pop(selected, None)
                continue
            known[selected] = SelectionCacheEntry(value=selected, entries=entries)
        return self._render(pending, target)

    async def handle(
        self, question: FieldConfig, value: Any, context: Optional[SelectionContext] = None
    ) -> List[RowMutation]:
        """All mutations for one trigger change, data-source effects included."""
        plan = self.plan(question, value, context)
        mutations = list(plan.mutations)
        for pending in plan.pending:
            mutations.extend(await self.resolve_data_source(pending))
        logger.debug(f"Selection effects on '{question.id}' produced {len(mutations)} mutations")
        return mutations
