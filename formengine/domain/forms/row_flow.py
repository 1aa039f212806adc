"""Row-flow resolution relative to one anchor row.

The resolver reads a RowFlowConfig together with the anchor row and the
current LineItemState. It returns resolved references, output segments,
prompts and action plans. Applying an action plan is the caller's job;
nothing here writes state.

INVARIANTS:
- A reference with a parentRef resolves to the rows nested under each
  row of its parent reference, in parent row order.
- A parentRef cycle or an unknown parentRef resolves to None; field refs
  through such a reference see an empty row set.
- The active prompt is the first visible prompt that is not complete for
  prompting purposes.
- A prompt whose bound text/paragraph/number field currently has focus is
  never complete for prompting purposes.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple, Union

from formengine.domain.forms.conditions import Condition, RowFilter, evaluate, row_filter_matches
from formengine.domain.forms.group_path import (
    GROUP_KEY_SEPARATOR,
    GroupPath,
    build_subgroup_key,
    field_path,
)
from formengine.domain.forms.group_tree import row_lookup_for
from formengine.domain.forms.line_item_state import LineItemRow, LineItemState
from formengine.domain.forms.lookup import FieldLookup, RowLookup, TopLookup
from formengine.domain.forms.row_flow_models import (
    ActionRef,
    AddLineItemsEffect,
    CloseOverlayEffect,
    DeleteLineItemsEffect,
    DeleteRowEffect,
    MatchMode,
    OpenOverlayEffect,
    OutputSegment,
    PromptInputKind,
    RowFlowAction,
    RowFlowConfig,
    RowFlowPrompt,
    SetValueEffect,
)
from formengine.domain.forms.values import is_empty_value, normalize_value_list

logger = logging.getLogger(__name__)

HOLD_WHILE_ACTIVE_TYPES = frozenset(("TEXT", "PARAGRAPH", "NUMBER"))
DEFAULT_LIST_DELIMITER = ", "


# =========================================================================
# Resolved structures
# =========================================================================


@dataclass(frozen=True)
class ResolvedRow:
    group_key: str
    row: LineItemRow

    def to_dict(self) -> Dict[str, Any]:
        return {"group_key": self.group_key, "row_id": self.row.id}


@dataclass(frozen=True)
class ResolvedReference:
    id: str
    group_id: str
    match: MatchMode = MatchMode.FIRST
    row_filter: Optional[RowFilter] = None
    rows: Tuple[ResolvedRow, ...] = ()

    def rows_by_group(self) -> Dict[str, List[str]]:
        """Row ids per group key, in resolution order."""
        grouped: Dict[str, List[str]] = {}
        for entry in self.rows:
            grouped.setdefault(entry.group_key, []).append(entry.row.id)
        return grouped

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "group_id": self.group_id,
            "match": self.match.value,
            "rows": [r.to_dict() for r in self.rows],
        }


@dataclass(frozen=True)
class FieldTarget:
    """Where a `fieldRef` points: rows of a reference, or the anchor row."""

    field_id: str
    group_id: str
    group_key: str
    rows: Tuple[ResolvedRow, ...] = ()
    primary_row: Optional[ResolvedRow] = None
    ref_id: Optional[str] = None

    @property
    def field_path(self) -> str:
        if self.primary_row is None or not self.field_id:
            return ""
        return field_path(self.primary_row.group_key, self.field_id, self.primary_row.row.id)

    def values(self) -> List[Any]:
        """Non-blank values of the field across every target row."""
        if not self.field_id:
            return []
        collected: List[Any] = []
        for entry in self.rows:
            collected.extend(normalize_value_list(entry.row.get(self.field_id)))
        return collected

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ref_id": self.ref_id,
            "field_id": self.field_id,
            "group_id": self.group_id,
            "group_key": self.group_key,
            "field_path": self.field_path,
            "row_ids": [entry.row.id for entry in self.rows],
        }


@dataclass(frozen=True)
class ResolvedSegment:
    id: str
    segment: OutputSegment
    target: Optional[FieldTarget]
    values: Tuple[Any, ...] = ()

    @property
    def text(self) -> str:
        delimiter = self.segment.format.list_delimiter
        if delimiter is None:
            delimiter = DEFAULT_LIST_DELIMITER
        return delimiter.join(str(v) for v in self.values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "field_ref": self.segment.field_ref,
            "values": list(self.values),
            "text": self.text,
            "render_as": self.segment.render_as,
            "edit_actions": list(self.segment.edit_actions),
        }


@dataclass(frozen=True)
class ResolvedPrompt:
    id: str
    prompt: RowFlowPrompt
    target: Optional[FieldTarget]
    complete: bool
    complete_for_prompting: bool
    visible: bool
    show_when_ok: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "target": self.target.to_dict() if self.target else None,
            "complete": self.complete,
            "complete_for_prompting": self.complete_for_prompting,
            "visible": self.visible,
            "show_when_ok": self.show_when_ok,
        }


@dataclass
class RowFlowState:
    references: Dict[str, ResolvedReference] = field(default_factory=dict)
    segments: List[ResolvedSegment] = field(default_factory=list)
    prompts: List[ResolvedPrompt] = field(default_factory=list)
    active_prompt_id: Optional[str] = None
    output_actions: List[ActionRef] = field(default_factory=list)

    def prompt(self, prompt_id: str) -> Optional[ResolvedPrompt]:
        for candidate in self.prompts:
            if candidate.id == prompt_id:
                return candidate
        return None

    def output_text(self, separator: str = " | ") -> str:
        return separator.join(s.text for s in self.segments if s.text)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "references": {k: v.to_dict() for k, v in self.references.items()},
            "segments": [s.to_dict() for s in self.segments],
            "prompts": [p.to_dict() for p in self.prompts],
            "active_prompt_id": self.active_prompt_id,
            "output_actions": [a.id for a in self.output_actions],
        }


# =========================================================================
# Planned effects (what the caller must apply)
# =========================================================================


@dataclass(frozen=True)
class PlannedSetValue:
    group_key: str
    row_id: str
    field_id: str
    value: Any = None
    type: str = "setValue"


@dataclass(frozen=True)
class PlannedDeleteLineItems:
    group_key: str
    row_ids: Tuple[str, ...]
    type: str = "deleteLineItems"


@dataclass(frozen=True)
class PlannedDeleteRow:
    group_key: str
    row_id: str
    type: str = "deleteRow"


@dataclass(frozen=True)
class PlannedAddLineItems:
    group_key: str
    preset: Optional[Dict[str, Any]] = None
    count: int = 1
    type: str = "addLineItems"


@dataclass(frozen=True)
class PlannedCloseOverlay:
    type: str = "closeOverlay"


@dataclass(frozen=True)
class PlannedOpenOverlay:
    """Overlay hand-off; presentation config is passed through unchanged."""

    target_kind: str
    key: str
    row_filter: Optional[Dict[str, Any]] = None
    label: Any = None
    hide_inline_subgroups: Optional[bool] = None
    hide_close_button: bool = False
    close_button_label: Any = None
    close_confirm: Optional[Dict[str, Any]] = None
    group_override: Optional[Dict[str, Any]] = None
    row_flow: Optional[Dict[str, Any]] = None
    overlay_context_header: Optional[Dict[str, Any]] = None
    overlay_helper_text: Optional[Dict[str, Any]] = None
    type: str = "openOverlay"


PlannedEffect = Union[
    PlannedSetValue,
    PlannedDeleteLineItems,
    PlannedDeleteRow,
    PlannedAddLineItems,
    PlannedCloseOverlay,
    PlannedOpenOverlay,
]


def planned_effect_to_dict(effect: PlannedEffect) -> Dict[str, Any]:
    """Wire form of a planned effect (camelCase keys, None values dropped)."""
    raw = {key: getattr(effect, key) for key in effect.__dataclass_fields__}
    result: Dict[str, Any] = {}
    for key, value in raw.items():
        if value is None:
            continue
        head, *rest = key.split("_")
        camel = head + "".join(part.title() for part in rest)
        result[camel] = list(value) if isinstance(value, tuple) else value
    return result


@dataclass
class RowFlowActionPlan:
    action: RowFlowAction
    effects: List[PlannedEffect] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_id": self.action.id,
            "effects": [planned_effect_to_dict(e) for e in self.effects],
        }


# =========================================================================
# Resolver
# =========================================================================


class RowFlowResolver:
    """Resolves one row flow against one anchor row.

    Args:
        config: Parsed row-flow configuration
        group_key: Key of the anchor row's group instance
        row: Anchor row
        top: Record lookup carrying the line-item state
        sub_group_ids: Sub-group ids declared on the anchor's group
        today: Reference day for date predicates
    """

    def __init__(
        self,
        config: RowFlowConfig,
        group_key: str,
        row: LineItemRow,
        top: TopLookup,
        sub_group_ids: Sequence[str] = (),
        today: Optional[date] = None,
    ):
        self.config = config
        self.group_key = str(group_key)
        self.row = row
        self.top = top
        self.state: LineItemState = top.line_items
        self.sub_group_ids: Set[str] = {str(s).strip() for s in sub_group_ids if str(s).strip()}
        self.today = today
        path = GroupPath.parse(self.group_key)
        if path is None:
            self.anchor_lookup: FieldLookup = RowLookup(row.values, top, group_key=self.group_key, row_id=row.id)
        else:
            self.anchor_lookup = row_lookup_for(top, self.state, path, row)
        self._references: Optional[Dict[str, ResolvedReference]] = None

    # ---------------------------------------------------------------------
    # References
    # ---------------------------------------------------------------------

    def _local_key(self, group_id: str) -> str:
        """Sub-groups of the anchor live under the anchor row; others are top-level."""
        if group_id in self.sub_group_ids:
            return build_subgroup_key(self.group_key, self.row.id, group_id)
        return group_id

    def _filtered(self, group_key: str, row_filter: Optional[RowFilter]) -> List[ResolvedRow]:
        return [
            ResolvedRow(group_key, row)
            for row in self.state.rows(group_key)
            if row_filter_matches(row_filter, row.values, self.today)
        ]

    @property
    def references(self) -> Dict[str, ResolvedReference]:
        if self._references is None:
            resolved: Dict[str, ResolvedReference] = {}
            resolving: Set[str] = set()
            for ref_id in self.config.references:
                self._resolve_reference(ref_id, resolved, resolving)
            self._references = resolved
        return self._references

    def _resolve_reference(
        self, ref_id: str, resolved: Dict[str, ResolvedReference], resolving: Set[str]
    ) -> Optional[ResolvedReference]:
        ref = self.config.references.get(ref_id)
        if ref is None:
            logger.debug(f"Row-flow reference '{ref_id}' is not declared")
            return None
        if ref_id in resolved:
            return resolved[ref_id]
        if ref_id in resolving:
            logger.warning(f"Row-flow reference cycle detected at '{ref_id}'")
            return None
        if not ref.group_id:
            logger.debug(f"Row-flow reference '{ref_id}' has no groupId")
            return None

        resolving.add(ref_id)
        try:
            rows: List[ResolvedRow] = []
            if ref.parent_ref:
                parent = self._resolve_reference(ref.parent_ref, resolved, resolving)
                if parent is None:
                    return None
                for parent_row in parent.rows:
                    key = build_subgroup_key(parent_row.group_key, parent_row.row.id, ref.group_id)
                    rows.extend(self._filtered(key, ref.row_filter))
            else:
                rows.extend(self._filtered(self._local_key(ref.group_id), ref.row_filter))
        finally:
            resolving.discard(ref_id)

        result = ResolvedReference(
            id=ref_id, group_id=ref.group_id, match=ref.match, row_filter=ref.row_filter, rows=tuple(rows)
        )
        resolved[ref_id] = result
        return result

    # ---------------------------------------------------------------------
    # Field targets and conditions
    # ---------------------------------------------------------------------

    def field_target(self, field_ref: str) -> Optional[FieldTarget]:
        """Resolve `refId.FIELD` (or a bare anchor-row field id)."""
        raw = (field_ref or "").strip()
        if not raw:
            return None
        if "." in raw:
            parts = [p.strip() for p in raw.split(".") if p.strip()]
            prefix = parts[0] if parts else ""
            if prefix in self.config.references:
                field_id = ".".join(parts[1:])
                ref = self.references.get(prefix)
                if ref is None:
                    declared = self.config.references[prefix]
                    return FieldTarget(field_id=field_id, group_id=declared.group_id,
                                       group_key=declared.group_id, ref_id=prefix)
                primary = ref.rows[0] if ref.rows else None
                return FieldTarget(
                    field_id=field_id,
                    group_id=ref.group_id,
                    group_key=primary.group_key if primary else ref.group_id,
                    rows=ref.rows,
                    primary_row=primary,
                    ref_id=prefix,
                )
        anchor = ResolvedRow(self.group_key, self.row)
        return FieldTarget(
            field_id=raw,
            group_id=self.group_key,
            group_key=self.group_key,
            rows=(anchor,),
            primary_row=anchor,
        )

    def _lookup_for(self, target: Optional[FieldTarget]) -> FieldLookup:
        if target is None or target.ref_id is None or target.primary_row is None:
            return self.anchor_lookup
        primary = target.primary_row
        return RowLookup(primary.row.values, self.anchor_lookup, group_key=primary.group_key, row_id=primary.row.id)

    def matches(self, when: Optional[Condition], target: Optional[FieldTarget] = None) -> bool:
        """Evaluate a clause in the target row's context (anchor row when None)."""
        if when is None:
            return True
        return evaluate(when, self._lookup_for(target), self.today)

    # ---------------------------------------------------------------------
    # State
    # ---------------------------------------------------------------------

    def _prompt_target(self, prompt: RowFlowPrompt) -> Optional[FieldTarget]:
        if prompt.input.kind == PromptInputKind.SELECTOR_OVERLAY and prompt.input.target_ref:
            return self.field_target(f"{prompt.input.target_ref}.")
        return self.field_target(prompt.field_ref) if prompt.field_ref else None

    def _prompt_complete(self, prompt: RowFlowPrompt, target: Optional[FieldTarget]) -> bool:
        if prompt.completed_when is not None:
            return self.matches(prompt.completed_when, target)
        if prompt.input.kind == PromptInputKind.SELECTOR_OVERLAY:
            return bool(target and target.ref_id and target.rows)
        if target is None or target.primary_row is None or not target.field_id:
            return False
        return not is_empty_value(target.primary_row.row.get(target.field_id))

    def resolve_prompt(
        self,
        prompt: RowFlowPrompt,
        active_field_path: Optional[str] = None,
        active_field_type: Optional[str] = None,
    ) -> ResolvedPrompt:
        target = self._prompt_target(prompt)
        show_when_ok = self.matches(prompt.show_when, target)
        complete = self._prompt_complete(prompt, target)

        active_path = (active_field_path or "").strip()
        holds = (active_field_type or "").strip().upper() in HOLD_WHILE_ACTIVE_TYPES
        focused = bool(active_path) and target is not None and target.field_path == active_path
        complete_for_prompting = False if (focused and holds) else complete

        visible = (
            show_when_ok
            and not (complete_for_prompting and prompt.hide_when_filled)
            and (not complete_for_prompting or prompt.keep_visible_when_filled)
        )
        return ResolvedPrompt(
            id=prompt.id,
            prompt=prompt,
            target=target,
            complete=complete,
            complete_for_prompting=complete_for_prompting,
            visible=visible,
            show_when_ok=show_when_ok,
        )

    def resolve_segment(self, segment: OutputSegment) -> Optional[ResolvedSegment]:
        target = self.field_target(segment.field_ref)
        values = target.values() if target is not None else []
        if not self.matches(segment.show_when, target):
            return None
        if self.config.output.hide_empty and not values:
            return None
        return ResolvedSegment(id=segment.field_ref, segment=segment, target=target, values=tuple(values))

    def resolve_state(
        self,
        active_field_path: Optional[str] = None,
        active_field_type: Optional[str] = None,
    ) -> RowFlowState:
        """Resolve references, segments, prompts and visible output actions.

        Args:
            active_field_path: Field path currently receiving input, if any
            active_field_type: Question type of that field (TEXT, NUMBER, ...)

        Returns:
            RowFlowState for the anchor row
        """
        segments = [s for s in (self.resolve_segment(seg) for seg in self.config.output.segments) if s]
        prompts = [
            self.resolve_prompt(p, active_field_path, active_field_type) for p in self.config.prompts
        ]
        active = next((p for p in prompts if p.visible and not p.complete_for_prompting), None)
        output_actions = [a for a in self.config.output.actions if self.matches(a.show_when)]
        return RowFlowState(
            references=dict(self.references),
            segments=segments,
            prompts=prompts,
            active_prompt_id=active.id if active else None,
            output_actions=output_actions,
        )

    # ---------------------------------------------------------------------
    # Action plans
    # ---------------------------------------------------------------------

    def plan_action(self, action_id: str) -> Optional[RowFlowActionPlan]:
        """Effect plan for one action; None when unknown or not shown."""
        action = self.config.action(action_id) if action_id else None
        if action is None:
            logger.debug(f"Row-flow action '{action_id}' is not declared")
            return None
        if not self.matches(action.show_when):
            return None
        plan = RowFlowActionPlan(action=action)
        for effect in action.effects:
            plan.effects.extend(self._plan_effect(effect))
        return plan

    def _plan_effect(self, effect: Any) -> List[PlannedEffect]:
        if isinstance(effect, SetValueEffect):
            target = self.field_target(effect.field_ref)
            if target is None or target.primary_row is None or not target.field_id:
                return []
            return [PlannedSetValue(
                group_key=target.primary_row.group_key,
                row_id=target.primary_row.row.id,
                field_id=target.field_id,
                value=effect.value,
            )]
        if isinstance(effect, DeleteLineItemsEffect):
            return self._plan_delete_line_items(effect)
        if isinstance(effect, DeleteRowEffect):
            return [PlannedDeleteRow(group_key=self.group_key, row_id=self.row.id)]
        if isinstance(effect, AddLineItemsEffect):
            key = self._add_target_key(effect)
            if not key:
                return []
            return [PlannedAddLineItems(
                group_key=key,
                preset=dict(effect.preset) if effect.preset else None,
                count=effect.count,
            )]
        if isinstance(effect, CloseOverlayEffect):
            return [PlannedCloseOverlay()]
        if isinstance(effect, OpenOverlayEffect):
            return self._plan_open_overlay(effect)
        raise TypeError(f"Unhandled row-flow effect: {type(effect).__name__}")

    def _plan_delete_line_items(self, effect: DeleteLineItemsEffect) -> List[PlannedEffect]:
        ref = self.references.get(effect.target_ref) if effect.target_ref else None
        if ref is not None:
            return [
                PlannedDeleteLineItems(group_key=key, row_ids=tuple(ids))
                for key, ids in ref.rows_by_group().items()
                if ids
            ]
        if not effect.group_id:
            return []
        key = self._local_key(effect.group_id)
        rows = self._filtered(key, effect.row_filter)
        if not rows:
            return []
        return [PlannedDeleteLineItems(group_key=key, row_ids=tuple(r.row.id for r in rows))]

    def _add_target_key(self, effect: AddLineItemsEffect) -> str:
        ref = self.references.get(effect.target_ref) if effect.target_ref else None
        if ref is not None:
            if ref.rows:
                return ref.rows[0].group_key
            return self._local_key(ref.group_id) if ref.group_id else ""
        if effect.group_id:
            return self._local_key(effect.group_id)
        return self.group_key

    def _plan_open_overlay(self, effect: OpenOverlayEffect) -> List[PlannedEffect]:
        if not self.matches(effect.when):
            return []
        ref = self.references.get(effect.target_ref) if effect.target_ref else None
        if ref is not None:
            key = ref.rows[0].group_key if ref.rows else ref.group_id
        elif effect.group_id:
            key = self._local_key(effect.group_id)
        else:
            key = ""
        if not key:
            return []
        return [PlannedOpenOverlay(
            target_kind="sub" if GROUP_KEY_SEPARATOR in key else "line",
            key=key,
            row_filter=dict(effect.row_filter) if effect.row_filter else None,
            label=effect.label,
            hide_inline_subgroups=effect.hide_inline_subgroups,
            hide_close_button=effect.hide_close_button,
            close_button_label=effect.close_button_label,
            close_confirm=effect.close_confirm,
            group_override=effect.group_override,
            row_flow=effect.row_flow,
            overlay_context_header=effect.overlay_context_header,
            overlay_helper_text=effect.overlay_helper_text,
        )]


def resolve_row_flow_state(
    config: RowFlowConfig,
    group_key: str,
    row: LineItemRow,
    top: TopLookup,
    sub_group_ids: Sequence[str] = (),
    active_field_path: Optional[str] = None,
    active_field_type: Optional[str] = None,
    today: Optional[date] = None,
) -> RowFlowState:
    resolver = RowFlowResolver(config, group_key, row, top, sub_group_ids, today)
    return resolver.resolve_state(active_field_path, active_field_type)


def resolve_row_flow_action_plan(
    config: RowFlowConfig,
    action_id: str,
    group_key: str,
    row: LineItemRow,
    top: TopLookup,
    sub_group_ids: Sequence[str] = (),
    today: Optional[date] = None,
) -> Optional[RowFlowActionPlan]:
    return RowFlowResolver(config, group_key, row, top, sub_group_ids, today).plan_action(action_id)
