"""Line-item state: an arena of rows indexed by group key.

State is immutable from the engine's point of view. Callers build a new
LineItemState for every change; the engine only reads it.

INVARIANTS:
- Row order within a group is preserved (numbering, first-match).
- A dangling sub-group key (parent row missing from its parent group)
  reads as absent: rows() returns an empty tuple.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from formengine.domain.forms.group_path import GroupPath, ROW_META_KEYS

logger = logging.getLogger(__name__)

GroupRef = Union[str, GroupPath]


@dataclass(frozen=True)
class LineItemRow:
    """One row of a repeatable section."""

    id: str
    values: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Any) -> "LineItemRow":
        if isinstance(raw, LineItemRow):
            return raw
        if not isinstance(raw, Mapping):
            raise ValueError(f"Row must be a mapping, got {type(raw).__name__}")
        row_id = raw.get("id")
        if row_id is None or str(row_id).strip() == "":
            raise ValueError("Row is missing 'id'")
        values = raw.get("values") or {}
        if not isinstance(values, Mapping):
            raise ValueError(f"Row '{row_id}' values must be a mapping")
        return cls(id=str(row_id).strip(), values=dict(values))

    def get(self, field_id: str, default: Any = None) -> Any:
        return self.values.get(field_id, default)

    @property
    def meta(self) -> Dict[str, Any]:
        """Engine bookkeeping values (`__ck*` keys)."""
        return {k: v for k, v in self.values.items() if k in ROW_META_KEYS}

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "values": dict(self.values)}


class LineItemState:
    """Mapping of group key -> ordered rows."""

    def __init__(self, groups: Optional[Mapping[str, Sequence[LineItemRow]]] = None):
        self._groups: Dict[str, Tuple[LineItemRow, ...]] = {
            str(key): tuple(rows) for key, rows in (groups or {}).items()
        }

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "LineItemState":
        """Build state from `{groupKey: [{id, values}, ...]}`.

        Rows without an id are dropped.
        """
        if isinstance(raw, LineItemState):
            return raw
        groups: Dict[str, List[LineItemRow]] = {}
        for key, rows in (raw or {}).items():
            parsed: List[LineItemRow] = []
            for index, row in enumerate(rows or []):
                try:
                    parsed.append(LineItemRow.from_dict(row))
                except ValueError as e:
                    logger.debug(f"Dropping row {index} of '{key}': {e}")
            groups[str(key)] = parsed
        return cls(groups)

    def keys(self) -> List[str]:
        return list(self._groups.keys())

    def rows(self, group: GroupRef) -> Tuple[LineItemRow, ...]:
        """Rows of a group instance; dangling or malformed keys read as empty."""
        path = GroupPath.parse(group)
        if path is None or not self.is_reachable(path):
            return ()
        return self._groups.get(path.key, ())

    def find_row(self, group: GroupRef, row_id: str) -> Optional[LineItemRow]:
        for row in self.rows(group):
            if row.id == row_id:
                return row
        return None

    def is_reachable(self, path: GroupPath) -> bool:
        """True when every parent row on the path exists in its parent group."""
        for parent_path, parent_row_id in path.ancestors():
            rows = self._groups.get(parent_path.key, ())
            if not any(row.id == parent_row_id for row in rows):
                return False
        return True

    def ancestor_rows(self, path: GroupPath) -> List[Tuple[GroupPath, LineItemRow]]:
        """Parent rows of a group instance, nearest first."""
        result = []
        for parent_path, parent_row_id in path.ancestors():
            row = self.find_row(parent_path, parent_row_id)
            if row is None:
                break
            result.append((parent_path, row))
        return result

    def with_rows(self, group: GroupRef, rows: Iterable[LineItemRow]) -> "LineItemState":
        """New state with one group's rows replaced."""
        groups = dict(self._groups)
        groups[str(group)] = tuple(rows)
        return LineItemState(groups)

    def to_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {key: [row.to_dict() for row in rows] for key, rows in self._groups.items()}

    def __contains__(self, group: object) -> bool:
        return bool(self.rows(group)) if isinstance(group, (str, GroupPath)) else False

    def __len__(self) -> int:
        return len(self._groups)
