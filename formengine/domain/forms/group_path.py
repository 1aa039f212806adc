"""Line-item address space.

A group key addresses one (sub)group instance. Top-level groups use their
bare id; a sub-group under row R of group G is `G::R::S`, and nesting
composes by repetition (`G::R::S::R2::T`). Internally the engine works with
GroupPath; the string form only appears at serialization boundaries
(state keys, field paths, API payloads).

INVARIANTS:
- A valid key has an odd number of non-empty `::` segments.
- GroupPath.parse(str(path)) == path for every constructed path.
- Field paths are `<groupKey>__<fieldId>__<rowId>`.
"""

from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple

from formengine.domain.forms.values import normalize_token

GROUP_KEY_SEPARATOR = "::"
FIELD_PATH_SEPARATOR = "__"

# Row meta keys carried inside row values
ROW_SOURCE_KEY = "__ckRowSource"
ROW_SELECTION_EFFECT_ID_KEY = "__ckSelectionEffectId"
ROW_PARENT_ROW_ID_KEY = "__ckParentRowId"
ROW_PARENT_GROUP_ID_KEY = "__ckParentGroupId"
ROW_HIDE_REMOVE_KEY = "__ckHideRemove"
ROW_NON_MATCH_OPTIONS_KEY = "__ckNonMatchOptions"
ROW_ID_KEY = "__ckRowId"

ROW_META_KEYS = frozenset((
    ROW_SOURCE_KEY,
    ROW_SELECTION_EFFECT_ID_KEY,
    ROW_PARENT_ROW_ID_KEY,
    ROW_PARENT_GROUP_ID_KEY,
    ROW_HIDE_REMOVE_KEY,
    ROW_NON_MATCH_OPTIONS_KEY,
    ROW_ID_KEY,
))

DEDUP_KEY_SEPARATOR = "||"


@dataclass(frozen=True)
class GroupPath:
    """Address of a (sub)group instance.

    `hops` holds (parent_row_id, sub_group_id) pairs, outermost first.
    """

    root_group_id: str
    hops: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def root(cls, group_id: str) -> "GroupPath":
        return cls(root_group_id=group_id)

    @classmethod
    def parse(cls, key: Any) -> Optional["GroupPath"]:
        """Parse a group key; malformed keys return None."""
        if isinstance(key, GroupPath):
            return key
        text = "" if key is None else str(key).strip()
        if not text:
            return None
        parts = [part.strip() for part in text.split(GROUP_KEY_SEPARATOR)]
        if any(not part for part in parts) or len(parts) % 2 == 0:
            return None
        hops = tuple((parts[i], parts[i + 1]) for i in range(1, len(parts), 2))
        return cls(root_group_id=parts[0], hops=hops)

    def child(self, row_id: str, sub_group_id: str) -> "GroupPath":
        return GroupPath(self.root_group_id, self.hops + ((row_id, sub_group_id),))

    @property
    def group_id(self) -> str:
        """Id of the addressed (sub)group definition."""
        return self.hops[-1][1] if self.hops else self.root_group_id

    @property
    def is_subgroup(self) -> bool:
        return bool(self.hops)

    @property
    def depth(self) -> int:
        return len(self.hops)

    @property
    def parent(self) -> Optional["GroupPath"]:
        if not self.hops:
            return None
        return GroupPath(self.root_group_id, self.hops[:-1])

    @property
    def parent_row_id(self) -> Optional[str]:
        return self.hops[-1][0] if self.hops else None

    @property
    def config_path(self) -> Tuple[str, ...]:
        """Definition ids from the root group down to this group."""
        return (self.root_group_id,) + tuple(sub_id for _, sub_id in self.hops)

    def ancestors(self) -> List[Tuple["GroupPath", str]]:
        """(parent path, parent row id) pairs, nearest first."""
        result = []
        current = self
        while current.hops:
            parent = current.parent
            result.append((parent, current.parent_row_id))
            current = parent
        return result

    @property
    def key(self) -> str:
        parts = [self.root_group_id]
        for row_id, sub_group_id in self.hops:
            parts.extend((row_id, sub_group_id))
        return GROUP_KEY_SEPARATOR.join(parts)

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class SubgroupKeyInfo:
    """Decomposition of a sub-group key into its parent link."""

    root_group_id: str
    parent_group_key: str
    parent_row_id: str
    sub_group_id: str
    path: Tuple[str, ...]


def build_subgroup_key(parent_group_key: Any, parent_row_id: str, sub_group_id: str) -> str:
    return GROUP_KEY_SEPARATOR.join((str(parent_group_key), str(parent_row_id), str(sub_group_id)))


def parse_subgroup_key(key: Any) -> Optional[SubgroupKeyInfo]:
    """Split `parent::row::sub`; bare group ids and malformed keys return None."""
    path = GroupPath.parse(key)
    if path is None or not path.hops:
        return None
    return SubgroupKeyInfo(
        root_group_id=path.root_group_id,
        parent_group_key=path.parent.key,
        parent_row_id=path.parent_row_id,
        sub_group_id=path.group_id,
        path=path.config_path,
    )


def root_group_id_of(key: Any) -> str:
    path = GroupPath.parse(key)
    return path.root_group_id if path else ("" if key is None else str(key))


def field_path(group_key: Any, field_id: str, row_id: str) -> str:
    """Stable path of one field in one row: `<groupKey>__<fieldId>__<rowId>`."""
    return FIELD_PATH_SEPARATOR.join((str(group_key), field_id, str(row_id)))


def collapse_key(group_key: Any, row_id: str) -> str:
    """Key of a row's collapsed/expanded UI state."""
    return f"{group_key}{GROUP_KEY_SEPARATOR}{row_id}"


def strip_field_prefix(raw_id: Any, prefixes: Sequence[str]) -> str:
    """Drop a `<groupKey>__` prefix from a step field reference."""
    text = "" if raw_id is None else str(raw_id).strip()
    for prefix in prefixes:
        marker = f"{prefix}{FIELD_PATH_SEPARATOR}"
        if text.startswith(marker):
            return text[len(marker):]
    return text


# =========================================================================
# Dedup keys
# =========================================================================


def normalize_dedup_scalar(value: Any) -> str:
    """Normalise a value for dedup comparison (trim, lower, sorted lists)."""
    if value is None:
        return ""
    if isinstance(value, (list, tuple, set, frozenset)):
        parts = sorted({normalize_dedup_scalar(item) for item in value} - {""})
        return DEDUP_KEY_SEPARATOR.join(parts)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return normalize_token(value)


def build_dedup_key(row_values: Mapping[str, Any], field_ids: Iterable[str]) -> Optional[str]:
    """Composite dedup key; None when any key field is empty."""
    ids = list(field_ids)
    if not ids:
        return None
    parts = [normalize_dedup_scalar(row_values.get(fid)) for fid in ids]
    if any(not part for part in parts):
        return None
    return DEDUP_KEY_SEPARATOR.join(parts)


def format_dedup_value(value: Any) -> str:
    """Human-readable value used in dedup messages."""
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(text for text in (format_dedup_value(item) for item in value) if text)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value).strip()
