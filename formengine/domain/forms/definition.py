"""Typed models for form definitions.

These dataclasses represent a parsed form definition: top-level
questions, line-item groups with nested sub-groups, validation rules,
option filters, selection effects and guided steps.

Parsing is lenient below the top level: a malformed rule, effect or step
target is skipped and logged, so one authoring mistake never disables
the rest of the form. Only an unusable top-level shape raises
FormDefinitionError.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from formengine.domain.forms.conditions import ALWAYS, Condition, RowFilter, parse_condition
from formengine.domain.forms.errors import FormDefinitionError
from formengine.domain.forms.group_path import GroupPath, strip_field_prefix
from formengine.domain.forms.row_flow_models import RowFlowConfig
from formengine.domain.forms.values import (
    as_value_list,
    is_empty_value,
    is_upload_complete,
    paragraph_user_text,
    resolve_localized,
)

logger = logging.getLogger(__name__)

DEFAULT_STEP_FIELD_PREFIX = "__ckStep"


class QuestionType(str, Enum):
    """Field kinds."""
    TEXT = "TEXT"
    PARAGRAPH = "PARAGRAPH"
    NUMBER = "NUMBER"
    DATE = "DATE"
    CHOICE = "CHOICE"
    CHECKBOX = "CHECKBOX"
    FILE_UPLOAD = "FILE_UPLOAD"
    LINE_ITEM_GROUP = "LINE_ITEM_GROUP"
    BUTTON = "BUTTON"

    @classmethod
    def parse(cls, raw: Any) -> "QuestionType":
        text = str(raw or "").strip().upper()
        try:
            return cls(text)
        except ValueError:
            logger.warning(f"Unknown field type '{raw}', treating as TEXT")
            return cls.TEXT


class RuleLevel(str, Enum):
    ERROR = "error"
    WARNING = "warning"

    @classmethod
    def parse(cls, raw: Any) -> "RuleLevel":
        text = str(raw or "").strip().lower()
        return cls.WARNING if text in ("warning", "warn") else cls.ERROR


class RulePhase(str, Enum):
    SUBMIT = "submit"
    FOLLOWUP = "followup"
    BOTH = "both"

    @classmethod
    def parse(cls, raw: Any) -> "RulePhase":
        text = str(raw or "").strip().lower()
        if text == "submit":
            return cls.SUBMIT
        if text == "followup":
            return cls.FOLLOWUP
        return cls.BOTH


class WarningDisplay(str, Enum):
    TOP = "top"
    FIELD = "field"
    BOTH = "both"


class WarningView(str, Enum):
    EDIT = "edit"
    SUMMARY = "summary"
    BOTH = "both"


class ExpandGate(str, Enum):
    COLLAPSED_FIELDS_VALID = "collapsedFieldsValid"
    ALWAYS = "always"


def _text(raw: Any) -> str:
    return "" if raw is None else str(raw).strip()


def _value_tuple(raw: Any) -> Tuple[Any, ...]:
    """A scalar `allowed`/`disallowed` entry is a one-element list."""
    return () if raw is None or raw == "" else tuple(as_value_list(raw))


def _enum_or_none(enum_cls, raw: Any):
    text = _text(raw).lower()
    for member in enum_cls:
        if member.value.lower() == text:
            return member
    return None


def _optional_int(raw: Any) -> Optional[int]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


# =========================================================================
# Visibility and rules
# =========================================================================


@dataclass(frozen=True)
class VisibilityConfig:
    show_when: Optional[Condition] = None
    hide_when: Optional[Condition] = None

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["VisibilityConfig"]:
        if isinstance(raw, VisibilityConfig):
            return raw
        if not isinstance(raw, Mapping):
            return None
        show = raw.get("showWhen")
        hide = raw.get("hideWhen")
        if show is None and hide is None:
            return None
        return cls(
            show_when=parse_condition(show) if show is not None else None,
            hide_when=parse_condition(hide) if hide is not None else None,
        )


@dataclass(frozen=True)
class ThenConfig:
    """Checks applied to a rule's target field."""
    field_id: str
    required: bool = False
    min: Any = None
    min_field_id: Optional[str] = None
    max: Any = None
    max_field_id: Optional[str] = None
    allowed: Tuple[Any, ...] = ()
    disallowed: Tuple[Any, ...] = ()

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ThenConfig":
        field_id = _text(raw.get("fieldId"))
        if not field_id:
            raise ValueError("'then' requires fieldId")
        return cls(
            field_id=field_id,
            required=bool(raw.get("required", False)),
            min=raw.get("min"),
            min_field_id=_text(raw.get("minFieldId")) or None,
            max=raw.get("max"),
            max_field_id=_text(raw.get("maxFieldId")) or None,
            allowed=_value_tuple(raw.get("allowed")),
            disallowed=_value_tuple(raw.get("disallowed")),
        )


@dataclass(frozen=True)
class ValidationRule:
    when: Condition = ALWAYS
    then: Optional[ThenConfig] = None
    message: Any = None
    level: RuleLevel = RuleLevel.ERROR
    phase: RulePhase = RulePhase.BOTH
    warning_display: Optional[WarningDisplay] = None
    warning_view: Optional[WarningView] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ValidationRule":
        then_raw = raw.get("then")
        if then_raw is not None and not isinstance(then_raw, Mapping):
            raise ValueError("'then' must be a mapping")
        then = ThenConfig.from_dict(then_raw) if then_raw else None
        level = RuleLevel.parse(raw.get("level"))
        # Rules without 'then' are standalone warnings.
        if then is None:
            level = RuleLevel.WARNING
        return cls(
            when=parse_condition(raw.get("when")),
            then=then,
            message=raw.get("message"),
            level=level,
            phase=RulePhase.parse(raw.get("phase")),
            warning_display=_enum_or_none(WarningDisplay, raw.get("warningDisplay")),
            warning_view=_enum_or_none(WarningView, raw.get("warningView")),
        )

    def applies_to_phase(self, phase: str) -> bool:
        return self.phase == RulePhase.BOTH or self.phase.value == phase

    @property
    def is_warning(self) -> bool:
        return self.level == RuleLevel.WARNING


def parse_rules(raw: Any, owner: str = "") -> Tuple[ValidationRule, ...]:
    """Parse validation rules, skipping malformed entries."""
    rules: List[ValidationRule] = []
    for index, item in enumerate(raw or []):
        if isinstance(item, ValidationRule):
            rules.append(item)
            continue
        if not isinstance(item, Mapping):
            logger.warning(f"Skipping validation rule {index} on '{owner}': not a mapping")
            continue
        try:
            rules.append(ValidationRule.from_dict(item))
        except (TypeError, ValueError) as e:
            logger.warning(f"Skipping validation rule {index} on '{owner}': {e}")
    return tuple(rules)


# =========================================================================
# Options, uploads, data sources, selection effects
# =========================================================================


@dataclass(frozen=True)
class OptionFilter:
    depends_on: Tuple[str, ...]
    option_map: Optional[Dict[str, Tuple[str, ...]]] = None
    data_source_field: Optional[str] = None
    data_source_delimiter: Optional[str] = None
    bypass_values: Tuple[str, ...] = ()
    match_mode: str = "and"

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["OptionFilter"]:
        if isinstance(raw, OptionFilter):
            return raw
        if not isinstance(raw, Mapping):
            return None
        depends = raw.get("dependsOn")
        depends_list = depends if isinstance(depends, (list, tuple)) else [depends]
        depends_on = tuple(_text(d) for d in depends_list if _text(d))
        option_map = raw.get("optionMap")
        parsed_map = None
        if isinstance(option_map, Mapping):
            parsed_map = {
                str(key): tuple(str(v) for v in (values if isinstance(values, (list, tuple)) else [values]))
                for key, values in option_map.items()
            }
        return cls(
            depends_on=depends_on,
            option_map=parsed_map,
            data_source_field=_text(raw.get("dataSourceField")) or None,
            data_source_delimiter=raw.get("dataSourceDelimiter"),
            bypass_values=tuple(_text(v) for v in (raw.get("bypassValues") or []) if _text(v)),
            match_mode="or" if _text(raw.get("matchMode")).lower() == "or" else "and",
        )


@dataclass(frozen=True)
class UploadConfig:
    min_files: Optional[int] = None
    max_files: Optional[int] = None

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["UploadConfig"]:
        if not isinstance(raw, Mapping):
            return None
        return cls(min_files=_optional_int(raw.get("minFiles")), max_files=_optional_int(raw.get("maxFiles")))


@dataclass(frozen=True)
class DataSourceConfig:
    id: str = ""
    mode: Optional[str] = None
    mapping: Dict[str, str] = field(default_factory=dict)
    limit: Optional[int] = None

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["DataSourceConfig"]:
        if isinstance(raw, DataSourceConfig):
            return raw
        if not isinstance(raw, Mapping):
            return None
        mapping = raw.get("mapping")
        return cls(
            id=_text(raw.get("id")),
            mode=_text(raw.get("mode")) or None,
            mapping={str(k): str(v) for k, v in mapping.items()} if isinstance(mapping, Mapping) else {},
            limit=_optional_int(raw.get("limit")),
        )

    @property
    def cache_id(self) -> str:
        return self.id or "default"


class SelectionEffectType(str, Enum):
    ADD_LINE_ITEMS = "addLineItems"
    ADD_LINE_ITEMS_FROM_DATA_SOURCE = "addLineItemsFromDataSource"
    DELETE_LINE_ITEMS = "deleteLineItems"
    SET_VALUE = "setValue"


@dataclass(frozen=True)
class SelectionEffect:
    type: SelectionEffectType
    id: Optional[str] = None
    group_id: Optional[str] = None
    field_id: Optional[str] = None
    value: Any = None
    when: Optional[Condition] = None
    preset: Optional[Dict[str, Any]] = None
    trigger_values: Tuple[str, ...] = ()
    hide_remove_button: bool = False
    target_effect_id: Optional[str] = None
    data_source: Optional[DataSourceConfig] = None
    lookup_field: Optional[str] = None
    data_field: Optional[str] = None
    line_item_mapping: Dict[str, str] = field(default_factory=dict)
    clear_group_before_add: bool = True
    aggregate_by: Tuple[str, ...] = ()
    aggregate_numeric_fields: Tuple[str, ...] = ()
    row_multiplier_field_id: Optional[str] = None
    data_source_multiplier_field: Optional[str] = None
    scale_numeric_fields: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "SelectionEffect":
        effect_type = SelectionEffectType(_text(raw.get("type")))
        group_id = _text(raw.get("groupId")) or None
        if effect_type != SelectionEffectType.SET_VALUE and not group_id:
            raise ValueError(f"{effect_type.value} requires groupId")
        if effect_type == SelectionEffectType.SET_VALUE and not _text(raw.get("fieldId")):
            raise ValueError("setValue requires fieldId")
        preset = raw.get("preset")
        mapping = raw.get("lineItemMapping")
        return cls(
            type=effect_type,
            id=_text(raw.get("id")) or None,
            group_id=group_id,
            field_id=_text(raw.get("fieldId")) or None,
            value=raw.get("value"),
            when=parse_condition(raw["when"]) if raw.get("when") is not None else None,
            preset=dict(preset) if isinstance(preset, Mapping) else None,
            trigger_values=tuple(_text(v) for v in (raw.get("triggerValues") or []) if _text(v)),
            hide_remove_button=raw.get("hideRemoveButton") is True,
            target_effect_id=_text(raw.get("targetEffectId")) or None,
            data_source=DataSourceConfig.from_dict(raw.get("dataSource")),
            lookup_field=_text(raw.get("lookupField")) or None,
            data_field=_text(raw.get("dataField")) or None,
            line_item_mapping={str(k): str(v) for k, v in mapping.items()} if isinstance(mapping, Mapping) else {},
            clear_group_before_add=raw.get("clearGroupBeforeAdd") is not False,
            aggregate_by=tuple(_text(v) for v in (raw.get("aggregateBy") or []) if _text(v)),
            aggregate_numeric_fields=tuple(
                _text(v) for v in (raw.get("aggregateNumericFields") or []) if _text(v)
            ),
            row_multiplier_field_id=_text(raw.get("rowMultiplierFieldId")) or None,
            data_source_multiplier_field=_text(raw.get("dataSourceMultiplierField")) or None,
            scale_numeric_fields=tuple(_text(v) for v in (raw.get("scaleNumericFields") or []) if _text(v)),
        )


def parse_selection_effects(raw: Any, owner: str = "") -> Tuple[SelectionEffect, ...]:
    effects: List[SelectionEffect] = []
    for index, item in enumerate(raw or []):
        if not isinstance(item, Mapping):
            logger.warning(f"Skipping selection effect {index} on '{owner}': not a mapping")
            continue
        try:
            effects.append(SelectionEffect.from_dict(item))
        except (TypeError, ValueError) as e:
            logger.warning(f"Skipping selection effect {index} on '{owner}': {e}")
    return tuple(effects)


# =========================================================================
# Fields
# =========================================================================


@dataclass(frozen=True)
class FieldConfig:
    """A top-level question or a line-item field."""
    id: str
    type: QuestionType = QuestionType.TEXT
    label: Dict[str, str] = field(default_factory=dict)
    required: bool = False
    required_message: Any = None
    visibility: Optional[VisibilityConfig] = None
    validation_rules: Tuple[ValidationRule, ...] = ()
    options: Tuple[str, ...] = ()
    options_raw: Tuple[Mapping[str, Any], ...] = ()
    option_filter: Optional[OptionFilter] = None
    value_map: Optional[OptionFilter] = None
    upload_config: Optional[UploadConfig] = None
    disclaimer_separator: Optional[str] = None
    data_source: Optional[DataSourceConfig] = None
    selection_effects: Tuple[SelectionEffect, ...] = ()

    @classmethod
    def _common_kwargs(cls, raw: Mapping[str, Any]) -> Dict[str, Any]:
        field_id = _text(raw.get("id"))
        if not field_id:
            raise FormDefinitionError("Field is missing 'id'")
        label = raw.get("label")
        if isinstance(label, Mapping):
            labels = {str(k).lower(): str(v) for k, v in label.items() if v}
        else:
            labels = {}
            for lang, keys in (("en", ("labelEn", "qEn")), ("fr", ("labelFr", "qFr")), ("nl", ("labelNl", "qNl"))):
                for key in keys:
                    if raw.get(key):
                        labels[lang] = str(raw[key])
                        break
            if isinstance(label, str) and label.strip():
                labels.setdefault("en", label)
        ui = raw.get("ui") if isinstance(raw.get("ui"), Mapping) else {}
        disclaimer = ui.get("paragraphDisclaimer")
        separator = None
        if isinstance(disclaimer, Mapping):
            separator = _text(disclaimer.get("separator")) or "---"
        raw_options = raw.get("options")
        if isinstance(raw_options, Mapping):
            raw_options = raw_options.get("en")
        return dict(
            id=field_id,
            type=QuestionType.parse(raw.get("type")),
            label=labels,
            required=bool(raw.get("required", False)),
            required_message=raw.get("requiredMessage"),
            visibility=VisibilityConfig.from_dict(raw.get("visibility")),
            validation_rules=parse_rules(raw.get("validationRules"), field_id),
            options=tuple(str(o) for o in (raw_options or []) if o is not None),
            options_raw=tuple(r for r in (raw.get("optionsRaw") or []) if isinstance(r, Mapping)),
            option_filter=OptionFilter.from_dict(raw.get("optionFilter")),
            value_map=OptionFilter.from_dict(raw.get("valueMap")),
            upload_config=UploadConfig.from_dict(raw.get("uploadConfig")),
            disclaimer_separator=separator,
            data_source=DataSourceConfig.from_dict(raw.get("dataSource")),
            selection_effects=parse_selection_effects(raw.get("selectionEffects"), field_id),
        )

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "FieldConfig":
        if isinstance(raw, FieldConfig):
            return raw
        if not isinstance(raw, Mapping):
            raise FormDefinitionError(f"Field must be a mapping, got {type(raw).__name__}")
        return cls(**cls._common_kwargs(raw))

    def label_for(self, language: Optional[str]) -> str:
        return resolve_localized(self.label, language, self.id)

    def required_value(self, raw: Any) -> Any:
        """Value checked by `required`: paragraph disclaimers are stripped."""
        if self.type == QuestionType.PARAGRAPH and self.disclaimer_separator:
            return paragraph_user_text(raw, self.disclaimer_separator)
        return raw

    def is_filled(self, raw: Any) -> bool:
        """Required-field predicate (upload count for files, emptiness otherwise)."""
        if self.type == QuestionType.FILE_UPLOAD:
            min_files = self.upload_config.min_files if self.upload_config else None
            return is_upload_complete(raw, min_files=min_files, required=True)
        return not is_empty_value(self.required_value(raw))


# =========================================================================
# Line-item groups
# =========================================================================


@dataclass(frozen=True)
class CollapsedField:
    field_id: str
    show_label: bool = True


@dataclass(frozen=True)
class GroupUi:
    mode: Optional[str] = None
    collapsed_fields: Tuple[CollapsedField, ...] = ()
    expand_gate: ExpandGate = ExpandGate.COLLAPSED_FIELDS_VALID
    default_collapsed: bool = True

    @classmethod
    def from_dict(cls, raw: Any) -> "GroupUi":
        if not isinstance(raw, Mapping):
            return cls()
        collapsed: List[CollapsedField] = []
        for entry in raw.get("collapsedFields") or []:
            if isinstance(entry, str) and entry.strip():
                collapsed.append(CollapsedField(field_id=entry.strip()))
            elif isinstance(entry, Mapping) and _text(entry.get("fieldId")):
                collapsed.append(CollapsedField(
                    field_id=_text(entry.get("fieldId")),
                    show_label=entry.get("showLabel") is not False,
                ))
        gate = ExpandGate.ALWAYS if _text(raw.get("expandGate")).lower() == "always" else ExpandGate.COLLAPSED_FIELDS_VALID
        default_collapsed = raw.get("defaultCollapsed")
        return cls(
            mode=_text(raw.get("mode")) or None,
            collapsed_fields=tuple(collapsed),
            expand_gate=gate,
            default_collapsed=True if default_collapsed is None else bool(default_collapsed),
        )

    @property
    def is_progressive(self) -> bool:
        return self.mode == "progressive" and bool(self.collapsed_fields)

    @property
    def collapsed_field_ids(self) -> Tuple[str, ...]:
        return tuple(cf.field_id for cf in self.collapsed_fields) if self.is_progressive else ()

    @property
    def gates_on_collapsed_fields(self) -> bool:
        return self.is_progressive and self.expand_gate == ExpandGate.COLLAPSED_FIELDS_VALID


@dataclass(frozen=True)
class DedupRule:
    fields: Tuple[str, ...]
    message: Any = None

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["DedupRule"]:
        if not isinstance(raw, Mapping):
            return None
        for key in ("fields", "fieldIds", "keys", "keyFields"):
            ids = raw.get(key)
            if isinstance(ids, str):
                ids = [part for part in ids.split(",")]
            if isinstance(ids, (list, tuple)):
                fields = tuple(_text(fid) for fid in ids if _text(fid))
                if fields:
                    return cls(fields=fields, message=raw.get("message"))
        return None


def resolve_subgroup_id(raw: Mapping[str, Any]) -> str:
    """Sub-group id, falling back to its label."""
    if _text(raw.get("id")):
        return _text(raw.get("id"))
    label = raw.get("label")
    if isinstance(label, str):
        return label.strip()
    if isinstance(label, Mapping):
        for lang in ("en", "fr", "nl"):
            if _text(label.get(lang)):
                return _text(label.get(lang))
    return ""


@dataclass(frozen=True)
class LineItemGroupConfig:
    id: str
    label: Any = None
    ui: GroupUi = GroupUi()
    fields: Tuple[FieldConfig, ...] = ()
    sub_groups: Tuple["LineItemGroupConfig", ...] = ()
    dedup_rules: Tuple[DedupRule, ...] = ()
    min_rows: Optional[int] = None
    max_rows: Optional[int] = None
    anchor_field_id: Optional[str] = None
    row_flow: Optional[RowFlowConfig] = None

    @classmethod
    def from_dict(cls, raw: Any, group_id: str = "") -> "LineItemGroupConfig":
        if isinstance(raw, LineItemGroupConfig):
            return raw
        if not isinstance(raw, Mapping):
            return cls(id=group_id)
        resolved_id = group_id or resolve_subgroup_id(raw)
        sub_groups = []
        for sub in raw.get("subGroups") or []:
            if not isinstance(sub, Mapping):
                continue
            sub_id = resolve_subgroup_id(sub)
            if not sub_id:
                logger.warning(f"Skipping sub-group without id under '{resolved_id}'")
                continue
            sub_groups.append(cls.from_dict(sub, sub_id))
        dedup = (DedupRule.from_dict(r) for r in (raw.get("dedupRules") or []))
        return cls(
            id=resolved_id,
            label=raw.get("label"),
            ui=GroupUi.from_dict(raw.get("ui")),
            fields=tuple(FieldConfig.from_dict(f) for f in (raw.get("fields") or []) if isinstance(f, Mapping)),
            sub_groups=tuple(sub_groups),
            dedup_rules=tuple(r for r in dedup if r is not None),
            min_rows=_optional_int(raw.get("minRows")),
            max_rows=_optional_int(raw.get("maxRows")),
            anchor_field_id=_text(raw.get("anchorFieldId")) or None,
            row_flow=RowFlowConfig.from_dict(raw.get("rowFlow")),
        )

    def field(self, field_id: str) -> Optional[FieldConfig]:
        for candidate in self.fields:
            if candidate.id == field_id:
                return candidate
        return None

    def sub_group(self, sub_group_id: str) -> Optional["LineItemGroupConfig"]:
        for candidate in self.sub_groups:
            if candidate.id == sub_group_id:
                return candidate
        return None

    @property
    def sub_group_ids(self) -> Tuple[str, ...]:
        return tuple(sub.id for sub in self.sub_groups)

    @property
    def field_ids(self) -> Tuple[str, ...]:
        return tuple(f.id for f in self.fields)


@dataclass(frozen=True)
class QuestionConfig(FieldConfig):
    line_item_config: Optional[LineItemGroupConfig] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "QuestionConfig":
        if isinstance(raw, QuestionConfig):
            return raw
        if not isinstance(raw, Mapping):
            raise FormDefinitionError(f"Question must be a mapping, got {type(raw).__name__}")
        kwargs = cls._common_kwargs(raw)
        line_cfg = None
        if kwargs["type"] == QuestionType.LINE_ITEM_GROUP:
            line_cfg = LineItemGroupConfig.from_dict(raw.get("lineItemConfig"), kwargs["id"])
        return cls(line_item_config=line_cfg, **kwargs)

    @property
    def is_line_item_group(self) -> bool:
        return self.type == QuestionType.LINE_ITEM_GROUP and self.line_item_config is not None


# =========================================================================
# Guided steps
# =========================================================================


def _parse_field_refs(raw: Any, prefixes: Sequence[str]) -> Optional[Tuple[str, ...]]:
    """Step field allowlist; None means "all fields"."""
    if raw is None:
        return None
    if isinstance(raw, str):
        entries: List[Any] = raw.split(",")
    elif isinstance(raw, (list, tuple)):
        entries = list(raw)
    else:
        return None
    ids = []
    for entry in entries:
        if isinstance(entry, Mapping):
            entry = entry.get("id") or entry.get("fieldId") or entry.get("field")
        fid = strip_field_prefix(entry, prefixes)
        if fid:
            ids.append(fid)
    return tuple(ids)


@dataclass(frozen=True)
class StepSubGroupTarget:
    id: str
    fields: Optional[Tuple[str, ...]] = None
    rows: Optional[RowFilter] = None
    validation_rows: Optional[RowFilter] = None

    @property
    def effective_validation_rows(self) -> Optional[RowFilter]:
        return self.validation_rows or self.rows


@dataclass(frozen=True)
class StepTarget:
    kind: str
    id: str
    fields: Optional[Tuple[str, ...]] = None
    rows: Optional[RowFilter] = None
    validation_rows: Optional[RowFilter] = None
    sub_groups: Tuple[StepSubGroupTarget, ...] = ()
    row_flow: Optional[RowFlowConfig] = None

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["StepTarget"]:
        if not isinstance(raw, Mapping):
            return None
        kind = _text(raw.get("kind"))
        target_id = _text(raw.get("id"))
        if kind not in ("question", "lineGroup") or not target_id:
            return None
        subs: List[StepSubGroupTarget] = []
        sub_cfg = raw.get("subGroups")
        include = sub_cfg.get("include") if isinstance(sub_cfg, Mapping) else None
        for sub in include or []:
            if not isinstance(sub, Mapping) or not _text(sub.get("id")):
                continue
            subs.append(StepSubGroupTarget(
                id=_text(sub.get("id")),
                fields=_parse_field_refs(sub.get("fields"), (target_id,)),
                rows=RowFilter.from_dict(sub.get("rows")),
                validation_rows=RowFilter.from_dict(sub.get("validationRows")),
            ))
        return cls(
            kind=kind,
            id=target_id,
            fields=_parse_field_refs(raw.get("fields"), (target_id,)),
            rows=RowFilter.from_dict(raw.get("rows")),
            validation_rows=RowFilter.from_dict(raw.get("validationRows")),
            sub_groups=tuple(subs),
            row_flow=RowFlowConfig.from_dict(raw.get("rowFlow")),
        )

    @property
    def effective_validation_rows(self) -> Optional[RowFilter]:
        return self.validation_rows or self.rows

    @property
    def dedup_key(self) -> str:
        return f"{self.kind}:{self.id}"


def _parse_targets(raw: Any) -> Tuple[StepTarget, ...]:
    targets = (StepTarget.from_dict(item) for item in (raw or []))
    return tuple(t for t in targets if t is not None)


@dataclass(frozen=True)
class GuidedStep:
    id: str
    label: Any = None
    include: Tuple[StepTarget, ...] = ()


@dataclass(frozen=True)
class StepsConfig:
    mode: str = "guided"
    prefix: str = DEFAULT_STEP_FIELD_PREFIX
    header: Tuple[StepTarget, ...] = ()
    items: Tuple[GuidedStep, ...] = ()

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["StepsConfig"]:
        if isinstance(raw, StepsConfig):
            return raw
        if not isinstance(raw, Mapping):
            return None
        state_fields = raw.get("stateFields")
        prefix = _text(state_fields.get("prefix")) if isinstance(state_fields, Mapping) else ""
        header = raw.get("header")
        items = []
        for item in raw.get("items") or []:
            if not isinstance(item, Mapping):
                continue
            items.append(GuidedStep(
                id=_text(item.get("id")),
                label=item.get("label"),
                include=_parse_targets(item.get("include")),
            ))
        return cls(
            mode=_text(raw.get("mode")) or "guided",
            prefix=prefix or DEFAULT_STEP_FIELD_PREFIX,
            header=_parse_targets(header.get("include")) if isinstance(header, Mapping) else (),
            items=tuple(items),
        )

    @property
    def is_guided(self) -> bool:
        return self.mode == "guided" and bool(self.items)

    def targets_for(self, step: GuidedStep) -> List[StepTarget]:
        """Header targets plus the step's own, de-duplicated by (kind, id)."""
        seen = set()
        combined = []
        for target in self.header + step.include:
            if target.dedup_key in seen:
                continue
            seen.add(target.dedup_key)
            combined.append(target)
        return combined


# =========================================================================
# Form definition
# =========================================================================


@dataclass(frozen=True)
class FormDefinition:
    questions: Tuple[QuestionConfig, ...] = ()
    steps: Optional[StepsConfig] = None
    id: Optional[str] = None
    title: Any = None

    @classmethod
    def from_dict(cls, raw: Any) -> "FormDefinition":
        """Parse a definition.

        Raises:
            FormDefinitionError: If the definition or a question is unusable
        """
        if isinstance(raw, FormDefinition):
            return raw
        if not isinstance(raw, Mapping):
            raise FormDefinitionError(f"Form definition must be a mapping, got {type(raw).__name__}")
        questions_raw = raw.get("questions")
        if questions_raw is None:
            questions_raw = []
        if not isinstance(questions_raw, (list, tuple)):
            raise FormDefinitionError("'questions' must be a list", path="questions")
        questions = []
        seen = set()
        for index, item in enumerate(questions_raw):
            try:
                question = QuestionConfig.from_dict(item)
            except FormDefinitionError as e:
                raise FormDefinitionError(str(e), path=f"questions[{index}]") from e
            if question.id in seen:
                raise FormDefinitionError(f"Duplicate question id '{question.id}'", path=f"questions[{index}]")
            seen.add(question.id)
            questions.append(question)
        return cls(
            questions=tuple(questions),
            steps=StepsConfig.from_dict(raw.get("steps")),
            id=_text(raw.get("id") or raw.get("formKey")) or None,
            title=raw.get("title"),
        )

    def question(self, question_id: str) -> Optional[QuestionConfig]:
        for candidate in self.questions:
            if candidate.id == question_id:
                return candidate
        return None

    @property
    def line_item_questions(self) -> Tuple[QuestionConfig, ...]:
        return tuple(q for q in self.questions if q.is_line_item_group)

    def group_config(self, path: Any) -> Optional[LineItemGroupConfig]:
        """Definition of the (sub)group a group key or path addresses."""
        parsed = GroupPath.parse(path)
        if parsed is None:
            return None
        question = self.question(parsed.root_group_id)
        if question is None or question.line_item_config is None:
            return None
        config = question.line_item_config
        for _, sub_id in parsed.hops:
            config = config.sub_group(sub_id)
            if config is None:
                return None
        return config
