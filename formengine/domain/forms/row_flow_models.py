"""Typed models for row-flow definitions.

A row flow is a per-row micro-workflow: named references to reachable
row sets, output segments, auto-advancing prompts and named actions.
Action effects form a tagged union; unknown effect types are skipped
when parsing.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from formengine.domain.forms.conditions import Condition, RowFilter, parse_condition

logger = logging.getLogger(__name__)


class MatchMode(str, Enum):
    """Advisory row matching strategy of a reference."""
    FIRST = "first"
    ANY = "any"
    ALL = "all"

    @classmethod
    def parse(cls, raw: Any) -> "MatchMode":
        value = str(raw or "").strip().lower()
        if value == "any":
            return cls.ANY
        if value == "all":
            return cls.ALL
        return cls.FIRST


class PromptInputKind(str, Enum):
    FIELD = "field"
    SELECTOR_OVERLAY = "selectorOverlay"

    @classmethod
    def parse(cls, raw: Any) -> "PromptInputKind":
        if str(raw or "").strip().lower() == "selectoroverlay":
            return cls.SELECTOR_OVERLAY
        return cls.FIELD


def _optional_condition(raw: Any) -> Optional[Condition]:
    return parse_condition(raw) if raw is not None else None


def _text(raw: Any) -> str:
    return "" if raw is None else str(raw).strip()


# =========================================================================
# References, segments, prompts
# =========================================================================


@dataclass(frozen=True)
class RowFlowReference:
    id: str
    group_id: str
    parent_ref: Optional[str] = None
    match: MatchMode = MatchMode.FIRST
    row_filter: Optional[RowFilter] = None

    @classmethod
    def from_dict(cls, ref_id: str, raw: Mapping[str, Any]) -> "RowFlowReference":
        return cls(
            id=ref_id,
            group_id=_text(raw.get("groupId")),
            parent_ref=_text(raw.get("parentRef")) or None,
            match=MatchMode.parse(raw.get("match")),
            row_filter=RowFilter.from_dict(raw.get("rowFilter")),
        )


@dataclass(frozen=True)
class SegmentFormat:
    type: str = "text"
    list_delimiter: Optional[str] = None


@dataclass(frozen=True)
class OutputSegment:
    field_ref: str
    label: Any = None
    show_when: Optional[Condition] = None
    format: SegmentFormat = SegmentFormat()
    render_as: str = "value"
    edit_actions: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "OutputSegment":
        fmt = raw.get("format") or {}
        return cls(
            field_ref=_text(raw.get("fieldRef")),
            label=raw.get("label"),
            show_when=_optional_condition(raw.get("showWhen")),
            format=SegmentFormat(
                type=_text(fmt.get("type")) or "text",
                list_delimiter=fmt.get("listDelimiter"),
            ) if isinstance(fmt, Mapping) else SegmentFormat(),
            render_as=_text(raw.get("renderAs")) or "value",
            edit_actions=segment_action_ids(raw),
        )


def segment_action_ids(raw: Optional[Mapping[str, Any]]) -> Tuple[str, ...]:
    """Ordered unique action ids from `editAction` then `editActions`."""
    if not raw:
        return ()
    ids: List[str] = []
    candidates: List[Any] = [raw.get("editAction")]
    extra = raw.get("editActions")
    if isinstance(extra, (list, tuple)):
        candidates.extend(extra)
    elif extra is not None:
        candidates.append(extra)
    for candidate in candidates:
        action_id = _text(candidate)
        if action_id and action_id not in ids:
            ids.append(action_id)
    return tuple(ids)


@dataclass(frozen=True)
class ActionRef:
    id: str
    position: str = "end"
    scope: str = "row"
    show_when: Optional[Condition] = None

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["ActionRef"]:
        if isinstance(raw, str):
            return cls(id=raw.strip()) if raw.strip() else None
        if not isinstance(raw, Mapping) or not _text(raw.get("id")):
            return None
        return cls(
            id=_text(raw.get("id")),
            position=_text(raw.get("position")) or "end",
            scope=_text(raw.get("scope")) or "row",
            show_when=_optional_condition(raw.get("showWhen")),
        )


def _parse_action_refs(raw: Any) -> Tuple[ActionRef, ...]:
    refs = (ActionRef.from_dict(item) for item in (raw or []))
    return tuple(ref for ref in refs if ref is not None)


@dataclass(frozen=True)
class RowFlowOutput:
    separator: str = " | "
    hide_empty: bool = False
    segments: Tuple[OutputSegment, ...] = ()
    actions: Tuple[ActionRef, ...] = ()
    actions_layout: str = "inline"
    actions_scope: str = "row"

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "RowFlowOutput":
        if not isinstance(raw, Mapping):
            return cls()
        separator = raw.get("separator")
        return cls(
            separator=separator if isinstance(separator, str) else " | ",
            hide_empty=bool(raw.get("hideEmpty", False)),
            segments=tuple(
                OutputSegment.from_dict(seg) for seg in (raw.get("segments") or []) if isinstance(seg, Mapping)
            ),
            actions=_parse_action_refs(raw.get("actions")),
            actions_layout=_text(raw.get("actionsLayout")) or "inline",
            actions_scope=_text(raw.get("actionsScope")) or "row",
        )


@dataclass(frozen=True)
class PromptInput:
    kind: PromptInputKind = PromptInputKind.FIELD
    target_ref: Optional[str] = None
    label: Any = None
    placeholder: Any = None

    @classmethod
    def from_dict(cls, raw: Any) -> "PromptInput":
        if not isinstance(raw, Mapping):
            return cls()
        return cls(
            kind=PromptInputKind.parse(raw.get("kind")),
            target_ref=_text(raw.get("targetRef")) or None,
            label=raw.get("label"),
            placeholder=raw.get("placeholder"),
        )


@dataclass(frozen=True)
class RowFlowPrompt:
    id: str
    field_ref: str = ""
    input: PromptInput = PromptInput()
    show_when: Optional[Condition] = None
    completed_when: Optional[Condition] = None
    hide_when_filled: bool = False
    keep_visible_when_filled: bool = False
    on_complete_actions: Tuple[str, ...] = ()
    actions: Tuple[ActionRef, ...] = ()

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "RowFlowPrompt":
        return cls(
            id=_text(raw.get("id")),
            field_ref=_text(raw.get("fieldRef")),
            input=PromptInput.from_dict(raw.get("input")),
            show_when=_optional_condition(raw.get("showWhen")),
            completed_when=_optional_condition(raw.get("completedWhen")),
            hide_when_filled=raw.get("hideWhenFilled") is True,
            keep_visible_when_filled=raw.get("keepVisibleWhenFilled") is True,
            on_complete_actions=tuple(_text(a) for a in (raw.get("onCompleteActions") or []) if _text(a)),
            actions=_parse_action_refs(raw.get("actions")),
        )


# =========================================================================
# Action effects (tagged union)
# =========================================================================


@dataclass(frozen=True)
class SetValueEffect:
    field_ref: str
    value: Any = None


@dataclass(frozen=True)
class DeleteLineItemsEffect:
    target_ref: Optional[str] = None
    group_id: Optional[str] = None
    row_filter: Optional[RowFilter] = None


@dataclass(frozen=True)
class DeleteRowEffect:
    pass


@dataclass(frozen=True)
class AddLineItemsEffect:
    target_ref: Optional[str] = None
    group_id: Optional[str] = None
    preset: Optional[Mapping[str, Any]] = None
    count: int = 1


@dataclass(frozen=True)
class CloseOverlayEffect:
    pass


@dataclass(frozen=True)
class OpenOverlayEffect:
    """Hand-off to a nested editing surface.

    Presentation settings are carried through unchanged as raw config.
    """

    target_ref: Optional[str] = None
    group_id: Optional[str] = None
    when: Optional[Condition] = None
    row_filter: Optional[Mapping[str, Any]] = None
    label: Any = None
    hide_inline_subgroups: Optional[bool] = None
    hide_close_button: bool = False
    close_button_label: Any = None
    close_confirm: Optional[Mapping[str, Any]] = None
    group_override: Optional[Mapping[str, Any]] = None
    row_flow: Optional[Mapping[str, Any]] = None
    overlay_context_header: Optional[Mapping[str, Any]] = None
    overlay_helper_text: Optional[Mapping[str, Any]] = None


ActionEffect = Union[
    SetValueEffect,
    DeleteLineItemsEffect,
    DeleteRowEffect,
    AddLineItemsEffect,
    CloseOverlayEffect,
    OpenOverlayEffect,
]


def _count(raw: Any) -> int:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return 1
    try:
        count = int(raw)
    except (OverflowError, ValueError):
        return 1
    return count if count > 0 else 1


def parse_action_effect(raw: Any) -> Optional[ActionEffect]:
    """Parse one effect; unknown or malformed effects return None."""
    if not isinstance(raw, Mapping):
        return None
    effect_type = _text(raw.get("type"))
    if effect_type == "setValue":
        field_ref = _text(raw.get("fieldRef"))
        return SetValueEffect(field_ref=field_ref, value=raw.get("value")) if field_ref else None
    if effect_type == "deleteLineItems":
        return DeleteLineItemsEffect(
            target_ref=_text(raw.get("targetRef")) or None,
            group_id=_text(raw.get("groupId")) or None,
            row_filter=RowFilter.from_dict(raw.get("rowFilter")),
        )
    if effect_type == "deleteRow":
        return DeleteRowEffect()
    if effect_type == "addLineItems":
        preset = raw.get("preset")
        return AddLineItemsEffect(
            target_ref=_text(raw.get("targetRef")) or None,
            group_id=_text(raw.get("groupId")) or None,
            preset=dict(preset) if isinstance(preset, Mapping) else None,
            count=_count(raw.get("count")),
        )
    if effect_type == "closeOverlay":
        return CloseOverlayEffect()
    if effect_type == "openOverlay":
        return OpenOverlayEffect(
            target_ref=_text(raw.get("targetRef")) or None,
            group_id=_text(raw.get("groupId")) or None,
            when=_optional_condition(raw.get("when")),
            row_filter=raw.get("rowFilter") if isinstance(raw.get("rowFilter"), Mapping) else None,
            label=raw.get("label"),
            hide_inline_subgroups=raw.get("hideInlineSubgroups"),
            hide_close_button=raw.get("hideCloseButton") is True,
            close_button_label=raw.get("closeButtonLabel"),
            close_confirm=raw.get("closeConfirm"),
            group_override=raw.get("groupOverride"),
            row_flow=raw.get("rowFlow"),
            overlay_context_header=raw.get("overlayContextHeader"),
            overlay_helper_text=raw.get("overlayHelperText"),
        )
    logger.debug(f"Skipping row-flow effect with unknown type '{effect_type}'")
    return None


@dataclass(frozen=True)
class RowFlowAction:
    id: str
    label: Any = None
    show_when: Optional[Condition] = None
    confirm: Optional[Mapping[str, Any]] = None
    effects: Tuple[ActionEffect, ...] = ()

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "RowFlowAction":
        effects = (parse_action_effect(item) for item in (raw.get("effects") or []))
        return cls(
            id=_text(raw.get("id")),
            label=raw.get("label"),
            show_when=_optional_condition(raw.get("showWhen")),
            confirm=raw.get("confirm") if isinstance(raw.get("confirm"), Mapping) else None,
            effects=tuple(effect for effect in effects if effect is not None),
        )


@dataclass(frozen=True)
class RowFlowConfig:
    references: Dict[str, RowFlowReference] = field(default_factory=dict)
    output: RowFlowOutput = RowFlowOutput()
    prompts: Tuple[RowFlowPrompt, ...] = ()
    actions: Tuple[RowFlowAction, ...] = ()
    mode: str = "progressive"

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["RowFlowConfig"]:
        if isinstance(raw, RowFlowConfig):
            return raw
        if not isinstance(raw, Mapping):
            return None
        references = {}
        for ref_id, ref_raw in (raw.get("references") or {}).items():
            if isinstance(ref_raw, Mapping) and _text(ref_id):
                references[_text(ref_id)] = RowFlowReference.from_dict(_text(ref_id), ref_raw)
        return cls(
            references=references,
            output=RowFlowOutput.from_dict(raw.get("output")),
            prompts=tuple(
                RowFlowPrompt.from_dict(p) for p in (raw.get("prompts") or [])
                if isinstance(p, Mapping) and _text(p.get("id"))
            ),
            actions=tuple(
                RowFlowAction.from_dict(a) for a in (raw.get("actions") or [])
                if isinstance(a, Mapping) and _text(a.get("id"))
            ),
            mode=_text(raw.get("mode")) or "progressive",
        )

    def action(self, action_id: str) -> Optional[RowFlowAction]:
        for candidate in self.actions:
            if candidate.id == action_id:
                return candidate
        return None
