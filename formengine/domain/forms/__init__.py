"""Form evaluation engine.

Pure evaluation over a form definition and a record: conditions,
visibility, validation, completeness, guided steps, row flows, ordered
entry and selection effects. No I/O apart from the data-source fetcher
the caller injects.
"""

from formengine.domain.forms.errors import DataSourceError, FormDefinitionError
from formengine.domain.forms.definition import FormDefinition, QuestionType
from formengine.domain.forms.line_item_state import LineItemRow, LineItemState
from formengine.domain.forms.lookup import FieldLookup, MappingLookup, RowLookup, TopLookup
from formengine.domain.forms.conditions import evaluate, parse_condition, row_filter_matches
from formengine.domain.forms.visibility import resolve_visibility, should_hide
from formengine.domain.forms.completeness import group_completeness, is_group_complete
from formengine.domain.forms.steps import compute_step_status
from formengine.domain.forms.row_flow import resolve_row_flow_action_plan, resolve_row_flow_state
from formengine.domain.forms.ordered_entry import (
    OrderedEntryTarget,
    find_first_ordered_entry_issue,
    find_ordered_entry_block,
)
from formengine.domain.forms.option_filter import compute_allowed_options, is_value_allowed
from formengine.domain.forms.data_sources import DataSourceCache
from formengine.domain.forms.selection_effects import (
    SelectionContext,
    SelectionEffectCache,
    SelectionEffectResolver,
)

__all__ = [
    "DataSourceCache",
    "DataSourceError",
    "FieldLookup",
    "FormDefinition",
    "FormDefinitionError",
    "LineItemRow",
    "LineItemState",
    "MappingLookup",
    "OrderedEntryTarget",
    "QuestionType",
    "RowLookup",
    "SelectionContext",
    "SelectionEffectCache",
    "SelectionEffectResolver",
    "TopLookup",
    "compute_allowed_options",
    "compute_step_status",
    "evaluate",
    "find_first_ordered_entry_issue",
    "find_ordered_entry_block",
    "group_completeness",
    "is_group_complete",
    "is_value_allowed",
    "parse_condition",
    "resolve_row_flow_action_plan",
    "resolve_row_flow_state",
    "resolve_visibility",
    "row_filter_matches",
    "should_hide",
]
