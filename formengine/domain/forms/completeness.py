"""Progressive-disclosure completeness.

A progressive group shows its collapsed fields while a row is collapsed.
With the `collapsedFieldsValid` gate, a collapsed row whose collapsed
fields are incomplete or invalid is disabled: it is skipped by
completeness, validation and guided-step counting.

INVARIANTS:
- A group with no rows is incomplete.
- A group is complete only with >= 1 enabled row and every visible
  required field filled, recursively through enabled sub-group rows.
- Disabled rows contribute nothing, including their sub-groups.
"""

from datetime import date
from typing import Dict, List, Mapping, Optional, Tuple

from formengine.domain.forms.definition import FormDefinition, LineItemGroupConfig
from formengine.domain.forms.group_path import GroupPath, collapse_key
from formengine.domain.forms.group_tree import GroupNode, build_group_trees, row_lookup_for
from formengine.domain.forms.line_item_state import LineItemRow, LineItemState
from formengine.domain.forms.lookup import FieldLookup
from formengine.domain.forms.option_filter import is_field_filled
from formengine.domain.forms.rules import rule_errors
from formengine.domain.forms.visibility import is_field_hidden

CollapsedRows = Mapping[str, bool]


def is_row_collapsed(
    config: LineItemGroupConfig,
    group_key: str,
    row_id: str,
    collapsed_rows: Optional[CollapsedRows] = None,
) -> bool:
    """Collapse state of a row; non-progressive rows are never collapsed."""
    if not config.ui.is_progressive:
        return False
    state = (collapsed_rows or {}).get(collapse_key(group_key, row_id))
    return config.ui.default_collapsed if state is None else bool(state)


def collapsed_field_blockers(
    config: LineItemGroupConfig,
    row: LineItemRow,
    lookup: FieldLookup,
    language: Optional[str] = None,
    today: Optional[date] = None,
) -> List[str]:
    """Visible collapsed fields that are required-but-empty or fail their own rules."""
    blocked: List[str] = []

    def hidden(field_id: str) -> bool:
        return is_field_hidden(config.field(field_id), lookup, today)

    for field_id in config.ui.collapsed_field_ids:
        field = config.field(field_id)
        if field is None or hidden(field_id):
            continue
        if field.required and not is_field_filled(field, row.get(field_id), lookup):
            blocked.append(field_id)
            continue
        own_rules = [r for r in field.validation_rules if r.then is not None and r.then.field_id == field_id]
        if own_rules and rule_errors(own_rules, lookup, language, "submit", hidden, today):
            blocked.append(field_id)
    return blocked


def is_row_disabled(
    config: LineItemGroupConfig,
    path: GroupPath,
    row: LineItemRow,
    lookup: FieldLookup,
    collapsed_rows: Optional[CollapsedRows] = None,
    language: Optional[str] = None,
    today: Optional[date] = None,
) -> bool:
    """True when a collapsed, gated row has blocking collapsed fields."""
    if not config.ui.gates_on_collapsed_fields:
        return False
    if not is_row_collapsed(config, path.key, row.id, collapsed_rows):
        return False
    return bool(collapsed_field_blockers(config, row, lookup, language, today))


def missing_required_fields(
    config: LineItemGroupConfig,
    row: LineItemRow,
    lookup: FieldLookup,
    today: Optional[date] = None,
) -> List[str]:
    """Visible required fields of one row that are not filled."""
    missing = []
    for field in config.fields:
        if not field.required or is_field_hidden(field, lookup, today):
            continue
        if not is_field_filled(field, row.get(field.id), lookup):
            missing.append(field.id)
    return missing


class CompletenessEvaluator:
    """Completeness of group instances against one state snapshot."""

    def __init__(
        self,
        top: FieldLookup,
        state: LineItemState,
        collapsed_rows: Optional[CollapsedRows] = None,
        language: Optional[str] = None,
        today: Optional[date] = None,
    ):
        self.top = top
        self.state = state
        self.collapsed_rows = collapsed_rows or {}
        self.language = language
        self.today = today

    def row_lookup(self, node: GroupNode, row: LineItemRow) -> FieldLookup:
        return row_lookup_for(self.top, self.state, node.path, row)

    def is_disabled(self, node: GroupNode, row: LineItemRow, lookup: Optional[FieldLookup] = None) -> bool:
        lookup = lookup or self.row_lookup(node, row)
        return is_row_disabled(node.config, node.path, row, lookup, self.collapsed_rows, self.language, self.today)

    def enabled_rows(self, node: GroupNode) -> List[LineItemRow]:
        return [row for row in node.rows if not self.is_disabled(node, row)]

    def is_complete(self, node: GroupNode) -> bool:
        """Group completeness per the module invariants."""
        if not node.rows:
            return False
        filled, any_enabled = self._scan(node)
        return filled and any_enabled

    def _scan(self, node: GroupNode) -> Tuple[bool, bool]:
        any_enabled = False
        for row in node.rows:
            lookup = self.row_lookup(node, row)
            if self.is_disabled(node, row, lookup):
                continue
            any_enabled = True
            if missing_required_fields(node.config, row, lookup, self.today):
                return False, any_enabled
            for child in node.children_of(row.id):
                filled, _ = self._scan(child)
                if not filled:
                    return False, any_enabled
        return True, any_enabled


def is_group_complete(
    node: GroupNode,
    top: FieldLookup,
    state: LineItemState,
    collapsed_rows: Optional[CollapsedRows] = None,
    language: Optional[str] = None,
    today: Optional[date] = None,
) -> bool:
    return CompletenessEvaluator(top, state, collapsed_rows, language, today).is_complete(node)


def group_completeness(
    definition: FormDefinition,
    top: FieldLookup,
    state: LineItemState,
    collapsed_rows: Optional[CollapsedRows] = None,
    language: Optional[str] = None,
    today: Optional[date] = None,
) -> Dict[str, bool]:
    """Completeness of every top-level line-item question, keyed by question id."""
    evaluator = CompletenessEvaluator(top, state, collapsed_rows, language, today)
    return {tree.key: evaluator.is_complete(tree) for tree in build_group_trees(definition, state)}
