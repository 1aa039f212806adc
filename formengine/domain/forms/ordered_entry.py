"""Ordered-entry guard.

Before a field is edited, every question declared before it (and, for a
row field, every field declared before it in the same row) must be
satisfied. The first unsatisfied one is returned as a block; the caller
refuses the edit and moves focus there.

INVARIANTS:
- Hidden questions and fields never block.
- A missing required value blocks with reason "missingRequired"; an
  existing error on an otherwise filled field blocks with reason "invalid".
- Line-item groups use group completeness, so a disabled row (collapsed
  with invalid collapsed fields) is not counted as an answer.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Mapping, Optional, Sequence

from formengine.domain.forms.completeness import CollapsedRows, is_group_complete
from formengine.domain.forms.conditions import AlwaysCondition, evaluate
from formengine.domain.forms.definition import (
    FieldConfig,
    FormDefinition,
    LineItemGroupConfig,
    QuestionConfig,
    RulePhase,
)
from formengine.domain.forms.group_path import GroupPath, field_path
from formengine.domain.forms.group_tree import GroupNode, row_lookup_for
from formengine.domain.forms.line_item_state import LineItemRow, LineItemState
from formengine.domain.forms.lookup import FieldLookup, TopLookup
from formengine.domain.forms.option_filter import is_field_filled
from formengine.domain.forms.validation.form_validation import collect_step_row_filters
from formengine.domain.forms.visibility import is_field_hidden, should_hide

logger = logging.getLogger(__name__)

REASON_MISSING = "missingRequired"
REASON_INVALID = "invalid"


@dataclass(frozen=True)
class OrderedEntryTarget:
    """The field about to be edited.

    Top-level questions use `scope="top"` with `question_id`. Row fields use
    `scope="line"` with the row's group key, row id and field id.
    """

    scope: str
    question_id: Optional[str] = None
    group_key: Optional[str] = None
    row_id: Optional[str] = None
    field_id: Optional[str] = None

    @classmethod
    def top(cls, question_id: str) -> "OrderedEntryTarget":
        return cls(scope="top", question_id=question_id)

    @classmethod
    def line(cls, group_key: str, row_id: str, field_id: str) -> "OrderedEntryTarget":
        return cls(scope="line", group_key=group_key, row_id=row_id, field_id=field_id)

    @property
    def top_question_id(self) -> str:
        if self.scope == "top":
            return self.question_id or ""
        path = GroupPath.parse(self.group_key)
        return path.root_group_id if path else (self.group_key or "")


@dataclass(frozen=True)
class OrderedEntryBlock:
    missing_field_path: str
    scope: str
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"missing_field_path": self.missing_field_path, "scope": self.scope, "reason": self.reason}


class OrderedEntryGuard:
    """Finds the first unsatisfied field before an edit target.

    Args:
        definition: Parsed form definition
        top: Record lookup carrying the line-item state
        errors: Current error map keyed by field path
        collapsed_rows: Row collapse state keyed by `groupKey::rowId`
        language: Language code for rule evaluation
        today: Reference day for date predicates
    """

    def __init__(
        self,
        definition: FormDefinition,
        top: TopLookup,
        errors: Optional[Mapping[str, str]] = None,
        collapsed_rows: Optional[CollapsedRows] = None,
        language: Optional[str] = None,
        today: Optional[date] = None,
    ):
        self.definition = definition
        self.top = top
        self.state: LineItemState = top.line_items
        self.errors = dict(errors or {})
        self.collapsed_rows = collapsed_rows or {}
        self.language = language
        self.today = today
        self.step_row_filters = collect_step_row_filters(definition.steps)

    # ---------------------------------------------------------------------
    # Top-level questions
    # ---------------------------------------------------------------------

    def _question_missing(self, question: QuestionConfig) -> bool:
        if not question.required or should_hide(question.visibility, self.top, self.today):
            return False
        if question.is_line_item_group:
            node = GroupNode.build(question.line_item_config, GroupPath.root(question.id), self.state)
            return not is_group_complete(
                node, self.top, self.state, self.collapsed_rows, self.language, self.today
            )
        return not is_field_filled(question, self.top.get_value(question.id), self.top)

    def _first_error_in_group(self, config: LineItemGroupConfig, path: GroupPath) -> str:
        for row in self.state.rows(path):
            for field_config in config.fields:
                key = field_path(path.key, field_config.id, row.id)
                if key in self.errors:
                    return key
            for sub in config.sub_groups:
                hit = self._first_error_in_group(sub, path.child(row.id, sub.id))
                if hit:
                    return hit
        return ""

    def _first_error_in_question(self, question: QuestionConfig) -> str:
        if not question.is_line_item_group:
            return question.id if question.id in self.errors else ""
        if question.id in self.errors:
            return question.id
        config = question.line_item_config
        hit = self._first_error_in_group(config, GroupPath.root(question.id))
        if hit or config.fields or config.sub_groups:
            return hit
        prefixes = (f"{question.id}__", f"{question.id}::")
        candidates = sorted(k for k in self.errors if k.startswith(prefixes))
        return candidates[0] if candidates else ""

    def _has_step_row_filter(self, question: QuestionConfig) -> bool:
        if self.step_row_filters is None:
            return False
        return question.id in self.step_row_filters.groups or question.id in self.step_row_filters.sub_groups

    def scan_questions(self, questions: Sequence[QuestionConfig]) -> Optional[OrderedEntryBlock]:
        """First block among `questions`, in order."""
        for question in questions:
            missing = self._question_missing(question)
            error_path = self._first_error_in_question(question)
            if missing:
                if error_path:
                    return OrderedEntryBlock(error_path, "top", REASON_MISSING)
                if question.is_line_item_group and self._has_step_row_filter(question):
                    # step row filters define completeness; no in-scope error means no block
                    continue
                return OrderedEntryBlock(question.id, "top", REASON_MISSING)
            if error_path:
                return OrderedEntryBlock(error_path, "top", REASON_INVALID)
        return None

    # ---------------------------------------------------------------------
    # Row fields
    # ---------------------------------------------------------------------

    def _required_by_rules(
        self, field_config: FieldConfig, row: LineItemRow, lookup: FieldLookup, hidden
    ) -> bool:
        if is_field_filled(field_config, row.get(field_config.id), lookup):
            return False
        for rule in field_config.validation_rules:
            then = rule.then
            if then is None or then.field_id != field_config.id or then.required is not True:
                continue
            if rule.phase not in (RulePhase.BOTH, RulePhase.SUBMIT):
                continue
            if isinstance(rule.when, AlwaysCondition) or not evaluate(rule.when, lookup, self.today):
                continue
            if hidden(then.field_id):
                continue
            return True
        return False

    def scan_row(self, target: OrderedEntryTarget) -> Optional[OrderedEntryBlock]:
        """First block among the fields declared before the target field."""
        path = GroupPath.parse(target.group_key)
        config = self.definition.group_config(path) if path else None
        if config is None:
            logger.debug(f"Ordered entry: no group definition for '{target.group_key}'")
            return None
        field_ids = config.field_ids
        if target.field_id not in field_ids:
            return None
        row = self.state.find_row(path, target.row_id) or LineItemRow(id=target.row_id or "")
        lookup = row_lookup_for(self.top, self.state, path, row)

        def hidden(field_id: str) -> bool:
            return is_field_hidden(config.field(field_id), lookup, self.today)

        for field_config in config.fields[:field_ids.index(target.field_id)]:
            if hidden(field_config.id):
                continue
            key = field_path(path.key, field_config.id, row.id)
            if field_config.required:
                missing = not is_field_filled(field_config, row.get(field_config.id), lookup)
            else:
                missing = self._required_by_rules(field_config, row, lookup, hidden)
            if missing:
                return OrderedEntryBlock(key, "line", REASON_MISSING)
            if key in self.errors:
                return OrderedEntryBlock(key, "line", REASON_INVALID)
        return None

    # ---------------------------------------------------------------------
    # Entry points
    # ---------------------------------------------------------------------

    def find_block(self, target: OrderedEntryTarget) -> Optional[OrderedEntryBlock]:
        questions = list(self.definition.questions)
        target_id = target.top_question_id
        index = next((i for i, q in enumerate(questions) if q.id == target_id), -1)
        if index > 0:
            block = self.scan_questions(questions[:index])
            if block is not None:
                return block
        if target.scope != "line":
            return None
        return self.scan_row(target)

    def find_first_issue(self) -> Optional[OrderedEntryBlock]:
        return self.scan_questions(self.definition.questions)


def find_ordered_entry_block(
    definition: FormDefinition,
    top: TopLookup,
    target: OrderedEntryTarget,
    errors: Optional[Mapping[str, str]] = None,
    collapsed_rows: Optional[CollapsedRows] = None,
    language: Optional[str] = None,
    today: Optional[date] = None,
) -> Optional[OrderedEntryBlock]:
    """Block for editing `target`, or None when the edit may proceed."""
    guard = OrderedEntryGuard(definition, top, errors, collapsed_rows, language, today)
    return guard.find_block(target)


def find_first_ordered_entry_issue(
    definition: FormDefinition,
    top: TopLookup,
    errors: Optional[Mapping[str, str]] = None,
    collapsed_rows: Optional[CollapsedRows] = None,
    language: Optional[str] = None,
    today: Optional[date] = None,
) -> Optional[OrderedEntryBlock]:
    """First block across the whole form (used before submit)."""
    return OrderedEntryGuard(definition, top, errors, collapsed_rows, language, today).find_first_issue()
