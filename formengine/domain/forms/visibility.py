"""Visibility resolution for questions, row fields and rows.

INVARIANTS:
- No showWhen means visible; a non-matching showWhen hides.
- A matching hideWhen hides, even when showWhen passes.
- Inside a row, operands resolve through RowLookup (row, ancestors, record).
"""

from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from formengine.domain.forms.conditions import RowFilter, evaluate, row_filter_matches
from formengine.domain.forms.definition import FieldConfig, FormDefinition, VisibilityConfig
from formengine.domain.forms.group_path import field_path
from formengine.domain.forms.group_tree import GroupNode, build_group_trees, row_lookup_for
from formengine.domain.forms.line_item_state import LineItemRow, LineItemState
from formengine.domain.forms.lookup import FieldLookup, TopLookup


def should_hide(
    visibility: Optional[Any],
    lookup: FieldLookup,
    today: Optional[date] = None,
) -> bool:
    """Decide whether a visibility config hides its target.

    Args:
        visibility: VisibilityConfig or raw `{showWhen, hideWhen}` mapping
        lookup: Record lookup, or a row lookup for row fields
        today: Reference day for date predicates

    Returns:
        True when hidden
    """
    config = VisibilityConfig.from_dict(visibility)
    if config is None:
        return False
    if config.show_when is not None and not evaluate(config.show_when, lookup, today):
        return True
    if config.hide_when is not None and evaluate(config.hide_when, lookup, today):
        return True
    return False


def is_field_hidden(field: Optional[FieldConfig], lookup: FieldLookup, today: Optional[date] = None) -> bool:
    """Unknown fields are never hidden."""
    if field is None:
        return False
    return should_hide(field.visibility, lookup, today)


def filter_rows(
    rows: Iterable[LineItemRow],
    row_filter: Optional[RowFilter],
    today: Optional[date] = None,
) -> List[LineItemRow]:
    """Rows passing an include/exclude filter, in order."""
    return [row for row in rows if row_filter_matches(row_filter, row.values, today)]


def resolve_visibility(
    definition: FormDefinition,
    top: TopLookup,
    state: Optional[LineItemState] = None,
    today: Optional[date] = None,
) -> Dict[str, bool]:
    """Hidden flag for every question and every row field instance.

    Keys are field paths: question ids for top-level questions and
    `<groupKey>__<fieldId>__<rowId>` for row fields. A hidden line-item
    question hides every field of its rows.
    """
    state = state if state is not None else top.line_items
    hidden: Dict[str, bool] = {}
    hidden_groups = set()
    for question in definition.questions:
        is_hidden = should_hide(question.visibility, top, today)
        hidden[question.id] = is_hidden
        if is_hidden and question.is_line_item_group:
            hidden_groups.add(question.id)

    for tree in build_group_trees(definition, state):
        _resolve_node(tree, top, state, today, tree.path.root_group_id in hidden_groups, hidden)
    return hidden


def _resolve_node(
    node: GroupNode,
    top: FieldLookup,
    state: LineItemState,
    today: Optional[date],
    parent_hidden: bool,
    hidden: Dict[str, bool],
) -> None:
    for row in node.rows:
        lookup = row_lookup_for(top, state, node.path, row)
        for field in node.config.fields:
            path = field_path(node.key, field.id, row.id)
            hidden[path] = parent_hidden or is_field_hidden(field, lookup, today)
        for child in node.children_of(row.id):
            _resolve_node(child, top, state, today, parent_hidden, hidden)
