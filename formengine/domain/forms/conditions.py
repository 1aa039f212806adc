"""Condition evaluator.

Conditions are parsed once into a tagged union of frozen dataclasses and
evaluated by exhaustive dispatch. Raw mappings are accepted anywhere a
condition is expected and parsed on the fly.

INVARIANTS:
- evaluate(NotCondition(c)) == not evaluate(c)
- An empty `all` or `any` evaluates to True.
- A malformed condition shape parses to AlwaysCondition (matches).
- Date predicates compare local calendar days; an empty operand never
  satisfies a date predicate.
- Evaluation is pure: no I/O, no mutation of the lookup.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from formengine.domain.forms.group_path import GroupPath
from formengine.domain.forms.lookup import FieldLookup, MappingLookup, RowLookup
from formengine.domain.forms.values import (
    as_value_list,
    is_blank_for_condition,
    normalize_token,
    numeric_values,
    parse_local_date,
    to_number,
)

logger = logging.getLogger(__name__)


# =========================================================================
# Condition nodes
# =========================================================================


@dataclass(frozen=True)
class AlwaysCondition:
    """Matches unconditionally (absent or malformed condition)."""


@dataclass(frozen=True)
class FieldCondition:
    """Leaf comparison against one field's value.

    Every operator that is set must hold.
    """

    field_id: str
    equals: Optional[Tuple[Any, ...]] = None
    not_equals: Optional[Tuple[Any, ...]] = None
    greater_than: Any = None
    less_than: Any = None
    not_empty: Optional[bool] = None
    is_empty: Optional[bool] = None
    is_today: Optional[bool] = None
    is_in_past: Optional[bool] = None
    is_in_future: Optional[bool] = None

    @property
    def has_operator(self) -> bool:
        return any(
            op is not None
            for op in (
                self.equals, self.not_equals, self.greater_than, self.less_than,
                self.not_empty, self.is_empty, self.is_today, self.is_in_past,
                self.is_in_future,
            )
        )


@dataclass(frozen=True)
class AllCondition:
    conditions: Tuple["Condition", ...] = ()


@dataclass(frozen=True)
class AnyCondition:
    conditions: Tuple["Condition", ...] = ()


@dataclass(frozen=True)
class NotCondition:
    condition: "Condition"


@dataclass(frozen=True)
class LineItemsCondition:
    """Row-level matching inside a line-item group or one of its sub-groups.

    `sub_group_path` lists sub-group ids from the group down; rows of the
    deepest level are matched against `when`. `parent_when` scopes which
    parent rows are descended into.
    """

    group_id: str
    sub_group_path: Tuple[str, ...] = ()
    when: Optional["Condition"] = None
    parent_when: Optional["Condition"] = None
    match: str = "any"
    parent_match: str = "any"


Condition = Union[
    AlwaysCondition,
    FieldCondition,
    AllCondition,
    AnyCondition,
    NotCondition,
    LineItemsCondition,
]

ALWAYS = AlwaysCondition()

_LEAF_KEYS = {
    "equals": "equals",
    "notEquals": "not_equals",
    "greaterThan": "greater_than",
    "lessThan": "less_than",
    "notEmpty": "not_empty",
    "isEmpty": "is_empty",
    "isToday": "is_today",
    "isInPast": "is_in_past",
    "isInFuture": "is_in_future",
}
_LIST_OPERATORS = ("equals", "not_equals")
_BOOL_OPERATORS = ("not_empty", "is_empty", "is_today", "is_in_past", "is_in_future")


# =========================================================================
# Parsing
# =========================================================================


def parse_condition(raw: Any) -> Condition:
    """Parse a raw `when` clause into a Condition.

    Never raises: unknown or malformed shapes become AlwaysCondition.

    Args:
        raw: Mapping, already parsed Condition, or None

    Returns:
        Parsed condition node
    """
    if raw is None:
        return ALWAYS
    if isinstance(raw, (AlwaysCondition, FieldCondition, AllCondition, AnyCondition, NotCondition, LineItemsCondition)):
        return raw
    if isinstance(raw, (list, tuple)):
        return AllCondition(tuple(parse_condition(item) for item in raw))
    if not isinstance(raw, Mapping):
        logger.debug(f"Condition of type {type(raw).__name__} treated as always-true")
        return ALWAYS

    if "all" in raw:
        return AllCondition(_parse_list(raw.get("all"), "all"))
    if "any" in raw:
        return AnyCondition(_parse_list(raw.get("any"), "any"))
    if "not" in raw:
        inner = raw.get("not")
        if inner is None:
            logger.debug("Condition 'not' without operand treated as always-true")
            return ALWAYS
        return NotCondition(parse_condition(inner))
    if "lineItems" in raw:
        return _parse_line_items(raw.get("lineItems"))
    if "fieldId" in raw:
        return _parse_field(raw)

    logger.debug(f"Unrecognised condition keys {sorted(map(str, raw.keys()))}; treated as always-true")
    return ALWAYS


def _parse_list(raw: Any, kind: str) -> Tuple[Condition, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, (list, tuple)):
        logger.debug(f"Condition '{kind}' expects a list, got {type(raw).__name__}")
        return (parse_condition(raw),)
    return tuple(parse_condition(item) for item in raw)


def _parse_field(raw: Mapping[str, Any]) -> Condition:
    field_id = raw.get("fieldId")
    if field_id is None or str(field_id).strip() == "":
        logger.debug("Condition leaf without fieldId treated as always-true")
        return ALWAYS
    kwargs = {}
    for key, attr in _LEAF_KEYS.items():
        if key not in raw or raw[key] is None:
            continue
        value = raw[key]
        if attr in _LIST_OPERATORS:
            kwargs[attr] = tuple(as_value_list(value))
        elif attr in _BOOL_OPERATORS:
            kwargs[attr] = _as_flag(value)
        else:
            kwargs[attr] = value
    return FieldCondition(field_id=str(field_id).strip(), **kwargs)


def _as_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("false", "0", "no", "")
    return bool(value)


def _parse_line_items(raw: Any) -> Condition:
    if not isinstance(raw, Mapping):
        logger.debug("Condition 'lineItems' expects a mapping; treated as always-true")
        return ALWAYS
    group_id = str(raw.get("groupId") or "").strip()
    if not group_id:
        logger.debug("Condition 'lineItems' without groupId treated as always-true")
        return ALWAYS
    path = raw.get("subGroupPath")
    if isinstance(path, str):
        sub_path = tuple(p.strip() for p in path.split(".") if p.strip())
    elif isinstance(path, (list, tuple)):
        sub_path = tuple(str(p).strip() for p in path if str(p).strip())
    else:
        sub_id = str(raw.get("subGroupId") or "").strip()
        sub_path = (sub_id,) if sub_id else ()
    return LineItemsCondition(
        group_id=group_id,
        sub_group_path=sub_path,
        when=parse_condition(raw["when"]) if raw.get("when") is not None else None,
        parent_when=parse_condition(raw["parentWhen"]) if raw.get("parentWhen") is not None else None,
        match="all" if str(raw.get("match") or "").lower() == "all" else "any",
        parent_match="all" if str(raw.get("parentMatch") or "").lower() == "all" else "any",
    )


def first_field_id(condition: Any) -> Optional[str]:
    """Field id of the first leaf in a condition, depth-first."""
    node = parse_condition(condition)
    if isinstance(node, FieldCondition):
        return node.field_id
    if isinstance(node, (AllCondition, AnyCondition)):
        for child in node.conditions:
            found = first_field_id(child)
            if found:
                return found
        return None
    if isinstance(node, NotCondition):
        return first_field_id(node.condition)
    return None


def referenced_field_ids(condition: Any) -> List[str]:
    """All field ids read by a condition's leaves, in order, unique."""
    seen: List[str] = []
    for leaf in _iter_leaves(parse_condition(condition)):
        if leaf.field_id not in seen:
            seen.append(leaf.field_id)
    return seen


def _iter_leaves(node: Condition) -> Iterator[FieldCondition]:
    if isinstance(node, FieldCondition):
        yield node
    elif isinstance(node, (AllCondition, AnyCondition)):
        for child in node.conditions:
            yield from _iter_leaves(child)
    elif isinstance(node, NotCondition):
        yield from _iter_leaves(node.condition)


# =========================================================================
# Evaluation
# =========================================================================


def evaluate(condition: Any, lookup: FieldLookup, today: Optional[date] = None) -> bool:
    """Evaluate a condition against a lookup.

    Args:
        condition: Condition node or raw mapping
        lookup: Value source (record, row, or row chain)
        today: Reference day for date predicates (defaults to local today)

    Returns:
        True when the condition matches
    """
    node = parse_condition(condition)
    if isinstance(node, AlwaysCondition):
        return True
    if isinstance(node, FieldCondition):
        return matches_value(node, lookup.get_value(node.field_id), today)
    if isinstance(node, AllCondition):
        return all(evaluate(child, lookup, today) for child in node.conditions)
    if isinstance(node, AnyCondition):
        if not node.conditions:
            return True
        return any(evaluate(child, lookup, today) for child in node.conditions)
    if isinstance(node, NotCondition):
        return not evaluate(node.condition, lookup, today)
    if isinstance(node, LineItemsCondition):
        return _evaluate_line_items(node, lookup, today)
    raise TypeError(f"Unhandled condition node: {type(node).__name__}")


def matches_value(node: FieldCondition, value: Any, today: Optional[date] = None) -> bool:
    """Check every operator of a leaf against an already-resolved value."""
    if not node.has_operator:
        return True
    values = as_value_list(value)

    if node.equals is not None:
        expected = {normalize_token(e) for e in node.equals}
        if not any(normalize_token(v) in expected for v in values):
            return False
    if node.not_equals is not None:
        rejected = {normalize_token(e) for e in node.not_equals}
        if any(normalize_token(v) in rejected for v in values):
            return False
    if node.greater_than is not None:
        threshold = to_number(node.greater_than)
        if threshold is not None and not any(n > threshold for n in numeric_values(value)):
            return False
    if node.less_than is not None:
        threshold = to_number(node.less_than)
        if threshold is not None and not any(n < threshold for n in numeric_values(value)):
            return False

    blank = is_blank_for_condition(value)
    if node.not_empty is not None and node.not_empty == blank:
        return False
    if node.is_empty is not None and node.is_empty != blank:
        return False

    if node.is_today is not None or node.is_in_past is not None or node.is_in_future is not None:
        day = _first_date(values)
        if day is None:
            return False
        reference = today or date.today()
        if node.is_today is not None and (day == reference) != node.is_today:
            return False
        if node.is_in_past is not None and (day < reference) != node.is_in_past:
            return False
        if node.is_in_future is not None and (day > reference) != node.is_in_future:
            return False
    return True


def _first_date(values: Sequence[Any]) -> Optional[date]:
    for item in values:
        parsed = parse_local_date(item)
        if parsed is not None:
            return parsed
    return None


def _evaluate_line_items(node: LineItemsCondition, lookup: FieldLookup, today: Optional[date]) -> bool:
    top = lookup.top() if isinstance(lookup, RowLookup) else lookup
    root = GroupPath.root(node.group_id)
    row_lookups = list(_scoped_rows(node, top, root, top, list(node.sub_group_path), today))
    if node.when is None:
        matches = [True for _ in row_lookups]
    else:
        matches = [evaluate(node.when, row_lookup, today) for row_lookup in row_lookups]
    if node.match == "all":
        return bool(matches) and all(matches)
    return any(matches)


def _scoped_rows(
    node: LineItemsCondition,
    top: FieldLookup,
    path: GroupPath,
    parent: FieldLookup,
    remaining: List[str],
    today: Optional[date],
) -> Iterator[RowLookup]:
    rows = top.get_line_items(path.key)
    if not remaining:
        for row in rows:
            yield RowLookup(row.values, parent, group_key=path.group_id, row_id=row.id)
        return
    parents = [RowLookup(row.values, parent, group_key=path.group_id, row_id=row.id) for row in rows]
    if node.parent_when is not None and len(remaining) == 1:
        flags = [evaluate(node.parent_when, p, today) for p in parents]
        if node.parent_match == "all" and not (flags and all(flags)):
            return
        parents = [p for p, ok in zip(parents, flags) if ok]
    for parent_lookup in parents:
        child = path.child(parent_lookup.row_id, remaining[0])
        yield from _scoped_rows(node, top, child, parent_lookup, remaining[1:], today)


# =========================================================================
# Row filters
# =========================================================================


@dataclass(frozen=True)
class RowFilter:
    """Include/exclude predicate applied to one row's own values."""

    include_when: Optional[Condition] = None
    exclude_when: Optional[Condition] = None

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["RowFilter"]:
        if isinstance(raw, RowFilter):
            return raw
        if not isinstance(raw, Mapping):
            return None
        include = raw.get("includeWhen")
        exclude = raw.get("excludeWhen")
        if include is None and exclude is None:
            return None
        return cls(
            include_when=parse_condition(include) if include is not None else None,
            exclude_when=parse_condition(exclude) if exclude is not None else None,
        )


def row_filter_matches(
    row_filter: Optional[RowFilter],
    lookup: Union[FieldLookup, Mapping[str, Any]],
    today: Optional[date] = None,
) -> bool:
    """True when a row passes the filter (no filter passes everything)."""
    if row_filter is None:
        return True
    if not isinstance(lookup, FieldLookup):
        lookup = MappingLookup(lookup)
    if row_filter.include_when is not None and not evaluate(row_filter.include_when, lookup, today):
        return False
    if row_filter.exclude_when is not None and evaluate(row_filter.exclude_when, lookup, today):
        return False
    return True
