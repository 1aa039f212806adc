"""Value lookup capability consumed by the condition evaluator.

A lookup answers "what is the value of field X here?". TopLookup reads the
record; RowLookup reads one row and escalates to its parent lookup (the
parent row, then the record) when the row has no value.
"""

from typing import Any, Callable, Mapping, Optional, Tuple

from formengine.domain.forms.group_path import FIELD_PATH_SEPARATOR
from formengine.domain.forms.line_item_state import LineItemRow, LineItemState
from formengine.domain.forms.system_fields import get_system_field_value
from formengine.domain.forms.values import is_empty_value

VirtualFieldResolver = Callable[[str], Any]


class FieldLookup:
    """Read access to field values and line items."""

    group_key: Optional[str] = None
    row_id: Optional[str] = None

    def get_value(self, field_id: str) -> Any:
        raise NotImplementedError

    def get_line_items(self, group_key: str) -> Tuple[LineItemRow, ...]:
        return ()


class MappingLookup(FieldLookup):
    """Plain mapping, no escalation. Used for row filters."""

    def __init__(self, values: Optional[Mapping[str, Any]] = None):
        self._values = values or {}

    def get_value(self, field_id: str) -> Any:
        return self._values.get(field_id)


class TopLookup(FieldLookup):
    """Top-level record values, then virtual fields, then record meta."""

    def __init__(
        self,
        values: Optional[Mapping[str, Any]] = None,
        line_items: Optional[LineItemState] = None,
        virtual_fields: Optional[VirtualFieldResolver] = None,
        record_meta: Optional[Mapping[str, Any]] = None,
    ):
        self.values = values or {}
        self.line_items = line_items or LineItemState()
        self._virtual_fields = virtual_fields
        self._record_meta = record_meta

    def get_value(self, field_id: str) -> Any:
        if field_id in self.values:
            return self.values[field_id]
        if self._virtual_fields is not None:
            virtual = self._virtual_fields(field_id)
            if virtual is not None:
                return virtual
        return get_system_field_value(field_id, self._record_meta)

    def get_line_items(self, group_key: str) -> Tuple[LineItemRow, ...]:
        return self.line_items.rows(group_key)

    def with_virtual_fields(self, virtual_fields: Optional[VirtualFieldResolver]) -> "TopLookup":
        return TopLookup(self.values, self.line_items, virtual_fields, self._record_meta)


class RowLookup(FieldLookup):
    """One row's values with escalation to the parent lookup.

    Resolution order: `<groupKey>__FIELD` in the row, `FIELD` in the row,
    then the parent (ancestor rows, then the record). The first non-blank
    value wins; when everything is blank the row's own raw value is kept.
    """

    def __init__(
        self,
        row_values: Optional[Mapping[str, Any]],
        parent: FieldLookup,
        group_key: Optional[str] = None,
        row_id: Optional[str] = None,
    ):
        self.row_values = row_values or {}
        self.parent = parent
        self.group_key = group_key
        self.row_id = row_id

    def get_value(self, field_id: str) -> Any:
        fallback = None
        if self.group_key:
            scoped = self.row_values.get(f"{self.group_key}{FIELD_PATH_SEPARATOR}{field_id}")
            if not is_empty_value(scoped):
                return scoped
            fallback = scoped
        if field_id in self.row_values:
            direct = self.row_values[field_id]
            if not is_empty_value(direct):
                return direct
            fallback = direct if fallback is None else fallback
        inherited = self.parent.get_value(field_id)
        if not is_empty_value(inherited):
            return inherited
        return fallback if fallback is not None else inherited

    def get_line_items(self, group_key: str) -> Tuple[LineItemRow, ...]:
        return self.parent.get_line_items(group_key)

    def top(self) -> FieldLookup:
        """Outermost lookup in the chain."""
        current: FieldLookup = self
        while isinstance(current, RowLookup):
            current = current.parent
        return current
