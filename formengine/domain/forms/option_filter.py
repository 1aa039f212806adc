"""Allowed options for dependent choice fields.

An option filter narrows a field's options from the values of the fields
it depends on, either through an `optionMap` or by matching tokens in a
column of the field's raw data-source rows.

INVARIANTS:
- No filter, or a filter with neither a usable data-source column nor an
  optionMap, allows every option.
- A data-source filter with no dependency tokens allows every option.
- When nothing matches, the allowed list is empty (never "everything").
- A multi-select dependency arrives as one `|`-joined string.
- A valueMap derives a value from the same dependency keys; an unmatched
  key derives "".
"""

import re
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from formengine.domain.forms.definition import FieldConfig, OptionFilter
from formengine.domain.forms.lookup import FieldLookup
from formengine.domain.forms.values import as_value_list, is_empty_value


WILDCARD_KEY = "*"
COMPOSITE_KEY_SEPARATOR = "||"
MULTI_VALUE_SEPARATOR = "|"
_DEFAULT_SPLIT = re.compile(r"[,;\n]")
_OPTION_VALUE_KEYS = ("__ckOptionValue", "value", "id", "label", "optionEn", "option")


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _split_multi(raw: str) -> List[str]:
    return [part.strip() for part in raw.split(MULTI_VALUE_SEPARATOR) if part.strip()]


def _split_delimited(raw: str, delimiter: Optional[str]) -> List[str]:
    trimmed = raw.strip()
    if not trimmed:
        return []
    marker = (delimiter or "").strip()
    if marker.lower() == "none":
        return [trimmed]
    parts = raw.split(delimiter) if marker else _DEFAULT_SPLIT.split(raw)
    return [part.strip() for part in parts if part.strip()]


def option_value_of(row: Any) -> str:
    """Option value carried by a raw data-source row."""
    if not isinstance(row, Mapping):
        return ""
    for key in _OPTION_VALUE_KEYS:
        candidate = row.get(key)
        if candidate is not None:
            return _text(candidate)
    return ""


def dependency_tokens(dependency_values: Iterable[Any]) -> List[str]:
    tokens: List[str] = []
    for dep in dependency_values:
        text = _text(dep)
        if not text:
            continue
        if MULTI_VALUE_SEPARATOR in text:
            tokens.extend(_split_multi(text))
        else:
            tokens.append(text)
    return tokens


def to_dependency_value(value: Any) -> str:
    """Flatten a dependency field's value; multi-selects join with `|`."""
    if is_empty_value(value):
        return ""
    if isinstance(value, (list, tuple, set, frozenset)):
        return MULTI_VALUE_SEPARATOR.join(_text(v) for v in as_value_list(value) if not is_empty_value(v))
    return _text(value)


def dependency_values_for(option_filter: OptionFilter, lookup: FieldLookup) -> List[str]:
    """Current dependency values, in `dependsOn` order."""
    return [to_dependency_value(lookup.get_value(dep)) for dep in option_filter.depends_on]


# =========================================================================
# Allowed options
# =========================================================================


def _allowed_from_data_source(
    option_filter: OptionFilter,
    options: Sequence[str],
    dependency_values: Sequence[Any],
    raw_rows: Optional[Sequence[Mapping[str, Any]]],
) -> Optional[List[str]]:
    column = (option_filter.data_source_field or "").strip()
    if not column or not raw_rows:
        return None
    tokens = dependency_tokens(dependency_values)
    if not tokens:
        return list(options)

    allowed = set()
    for row in raw_rows:
        value = option_value_of(row)
        if not value:
            continue
        raw_value = row.get(column)
        if isinstance(raw_value, (list, tuple)):
            row_tokens = [_text(v) for v in raw_value if _text(v)]
        elif raw_value is None:
            row_tokens = []
        else:
            row_tokens = _split_delimited(_text(raw_value), option_filter.data_source_delimiter)
        if not row_tokens:
            continue
        if option_filter.match_mode == "or":
            matched = any(token in row_tokens for token in tokens)
        else:
            matched = all(token in row_tokens for token in tokens)
        if matched:
            allowed.add(value)

    if not allowed:
        return []
    if options:
        return [value for value in options if value in allowed]
    return sorted(allowed)


def _or_allowed(option_map: Mapping[str, Sequence[str]], keys: Sequence[str]) -> List[str]:
    if not keys:
        return list(option_map.get(WILDCARD_KEY, ()))
    allowed: List[str] = []
    matched = False
    for key in keys:
        values = option_map.get(key)
        if values is None:
            continue
        matched = True
        allowed.extend(v for v in values if v not in allowed)
    if not matched:
        allowed.extend(v for v in option_map.get(WILDCARD_KEY, ()) if v not in allowed)
    return allowed


def compute_allowed_options(
    option_filter: Optional[OptionFilter],
    options: Sequence[str],
    dependency_values: Sequence[Any],
    raw_rows: Optional[Sequence[Mapping[str, Any]]] = None,
) -> List[str]:
    """Options allowed for the current dependency values.

    Args:
        option_filter: The field's filter (None allows everything)
        options: The field's option values, in display order
        dependency_values: One value per `dependsOn` entry
        raw_rows: The field's raw data-source rows, when it has any

    Returns:
        Allowed option values
    """
    if option_filter is None:
        return list(options)

    if option_filter.bypass_values:
        tokens = dependency_tokens(dependency_values)
        if any(token in option_filter.bypass_values for token in tokens):
            return list(options)

    from_source = _allowed_from_data_source(option_filter, options, dependency_values, raw_rows)
    if from_source is not None:
        return from_source

    option_map = option_filter.option_map
    if option_map is None:
        return list(options)
    values = [_text(v) for v in dependency_values]

    if len(values) == 1 and MULTI_VALUE_SEPARATOR in values[0]:
        joined = values[0]
        if joined in option_map:
            return list(option_map[joined])
        parts = _split_multi(joined)
        if len(parts) > 1:
            if option_filter.match_mode == "or":
                return _or_allowed(option_map, parts)
            fallback = option_map.get(WILDCARD_KEY, ())
            allowed: Optional[List[str]] = None
            for part in parts:
                candidates = option_map.get(part, fallback)
                allowed = list(candidates) if allowed is None else [v for v in allowed if v in candidates]
            return allowed or []

    if option_filter.match_mode == "or":
        if len(values) == 1 and MULTI_VALUE_SEPARATOR in values[0]:
            keys = _split_multi(values[0])
        else:
            keys = [v for v in values if v]
        return _or_allowed(option_map, keys)

    candidate_keys: List[str] = []
    if len(values) > 1:
        candidate_keys.append(COMPOSITE_KEY_SEPARATOR.join(values))
    candidate_keys.extend(v for v in values if v)
    candidate_keys.append(WILDCARD_KEY)
    for key in candidate_keys:
        if key in option_map:
            return list(option_map[key])
    return []


def compute_non_match_option_keys(
    option_filter: Optional[OptionFilter],
    dependency_values: Sequence[Any],
    selected_value: Any,
) -> List[str]:
    """Dependency keys of an `or` filter whose options exclude the selection."""
    if option_filter is None or option_filter.option_map is None or option_filter.data_source_field:
        return []
    if option_filter.match_mode != "or":
        return []
    selected = _text(selected_value)
    if not selected:
        return []
    values = [_text(v) for v in dependency_values]
    if len(values) == 1 and MULTI_VALUE_SEPARATOR in values[0]:
        keys = _split_multi(values[0])
    else:
        keys = [v for v in values if v]
    fallback = option_filter.option_map.get(WILDCARD_KEY, ())
    return [key for key in keys if selected not in option_filter.option_map.get(key, fallback)]


def allowed_options_for_field(
    field_config: FieldConfig,
    lookup: FieldLookup,
    raw_rows: Optional[Sequence[Mapping[str, Any]]] = None,
) -> List[str]:
    """Allowed options of a field in the context of one lookup (row or record)."""
    rows = raw_rows if raw_rows is not None else field_config.options_raw
    return compute_allowed_options(
        field_config.option_filter,
        field_config.options,
        dependency_values_for(field_config.option_filter, lookup) if field_config.option_filter else [],
        rows,
    )


def is_value_allowed(field_config: FieldConfig, value: Any, lookup: FieldLookup) -> bool:
    """True when every element of `value` survives the field's option filter.

    Fields without a filter accept any value. A filter with neither an
    optionMap nor raw rows limits values to the field's own options.
    """
    option_filter = field_config.option_filter
    if option_filter is None:
        return True
    allowed = set(allowed_options_for_field(field_config, lookup))
    return all(_text(v) in allowed for v in as_value_list(value) if not is_empty_value(v))


# =========================================================================
# Value maps
# =========================================================================


def resolve_value_map_value(value_map: Optional[OptionFilter], lookup: FieldLookup) -> str:
    """Derived value of a field whose value comes from its dependencies.

    Keys tried in order: the `||`-joined composite key (more than one
    dependency), each non-empty dependency value, then `*`. The first key
    present in the map wins; its values are trimmed, de-duplicated and
    joined with ", ".
    """
    if value_map is None or not value_map.option_map or not value_map.depends_on:
        return ""
    values = dependency_values_for(value_map, lookup)
    candidates: List[str] = []
    if len(values) > 1:
        candidates.append(COMPOSITE_KEY_SEPARATOR.join(values))
    candidates.extend(v for v in values if v)
    candidates.append(WILDCARD_KEY)
    for key in candidates:
        if key not in value_map.option_map:
            continue
        seen: List[str] = []
        for item in value_map.option_map[key]:
            text = _text(item).strip()
            if text and text not in seen:
                seen.append(text)
        return ", ".join(seen)
    return ""


def is_field_filled(field_config: FieldConfig, raw: Any, lookup: FieldLookup) -> bool:
    """Required check; a field with a valueMap is judged by its mapped value."""
    if field_config.value_map is not None:
        return field_config.is_filled(resolve_value_map_value(field_config.value_map, lookup))
    return field_config.is_filled(raw)
