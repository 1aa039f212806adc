"""Form-level validation.

Runs every question, row and sub-group row of a form snapshot through
required checks, upload counts, validation rules and dedup rules.

INVARIANTS:
- Hidden fields are never required and their rules never fire.
- Rows disabled by a progressive expand gate are skipped entirely.
- Rows excluded by every guided step's validation row filter are not
  validated.
- Required and upload issues for a field are emitted before its rule
  issues, so error_map() reports them first.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Mapping, Optional

from formengine.domain.forms.completeness import CollapsedRows, is_row_disabled
from formengine.domain.forms.conditions import RowFilter, row_filter_matches
from formengine.domain.forms.definition import (
    FieldConfig,
    FormDefinition,
    LineItemGroupConfig,
    QuestionType,
    StepsConfig,
)
from formengine.domain.forms.group_path import GroupPath, field_path, strip_field_prefix
from formengine.domain.forms.group_tree import GroupNode, build_group_trees, row_lookup_for
from formengine.domain.forms.line_item_state import LineItemRow, LineItemState
from formengine.domain.forms.lookup import FieldLookup, TopLookup
from formengine.domain.forms.option_filter import is_field_filled
from formengine.domain.forms.rules import RuleOutcome, evaluate_rules
from formengine.domain.forms.validation.dedup import check_dedup_rules
from formengine.domain.forms.validation.validation_result import FormValidationResult, ValidationIssue
from formengine.domain.forms.values import (
    fill_tokens,
    resolve_localized,
    to_upload_items,
)
from formengine.domain.forms.visibility import is_field_hidden, should_hide

logger = logging.getLogger(__name__)

REQUIRED_MESSAGE = {
    "en": "{field} is required.",
    "fr": "{field} est obligatoire.",
    "nl": "{field} is verplicht.",
}
MIN_FILES_MESSAGE = "{field} requires at least {min} file{plural}."
MAX_FILES_MESSAGE = "{field} allows at most {max} file{plural}."
GROUP_REQUIRED_MESSAGE = "At least one line item is required."
GROUP_FILL_COLLAPSED_MESSAGE = "Complete at least one row (fill the collapsed fields)."
GROUP_VALID_ROW_MESSAGE = "Complete at least one valid row."


# =========================================================================
# Guided-step row filters
# =========================================================================


@dataclass
class StepRowFilters:
    """Validation row filters declared by guided-step lineGroup targets."""
    groups: Dict[str, List[RowFilter]] = field(default_factory=dict)
    sub_groups: Dict[str, Dict[str, List[RowFilter]]] = field(default_factory=dict)

    def filters_for(self, path: GroupPath) -> List[RowFilter]:
        if not path.is_subgroup:
            return self.groups.get(path.root_group_id, [])
        return self.sub_groups.get(path.root_group_id, {}).get(path.group_id, [])

    def includes(self, path: GroupPath, row: LineItemRow, today: Optional[date] = None) -> bool:
        """A row is validated when no filter applies or any filter matches."""
        filters = self.filters_for(path)
        if not filters:
            return True
        return any(row_filter_matches(f, row.values, today) for f in filters)


def collect_step_row_filters(steps: Optional[StepsConfig]) -> Optional[StepRowFilters]:
    """Collect validationRows (or rows) filters from header and step targets."""
    if steps is None or steps.mode != "guided":
        return None
    targets = list(steps.header)
    for step in steps.items:
        targets.extend(step.include)
    collected = StepRowFilters()
    for target in targets:
        if target.kind != "lineGroup":
            continue
        group_filter = target.effective_validation_rows
        if group_filter is not None:
            collected.groups.setdefault(target.id, []).append(group_filter)
        for sub in target.sub_groups:
            sub_filter = sub.effective_validation_rows
            if sub_filter is not None:
                collected.sub_groups.setdefault(target.id, {}).setdefault(sub.id, []).append(sub_filter)
    if not collected.groups and not collected.sub_groups:
        return None
    return collected


# =========================================================================
# Message helpers
# =========================================================================


def required_message(field_config: FieldConfig, language: Optional[str]) -> str:
    label = field_config.label_for(language)
    custom = resolve_localized(field_config.required_message, language, "")
    template = custom or resolve_localized(REQUIRED_MESSAGE, language)
    return fill_tokens(template, field=label)


def check_upload_counts(field_config: FieldConfig, value: Any, language: Optional[str] = None) -> str:
    """Upload min/max message; "" when the count is acceptable."""
    count = len(to_upload_items(value))
    upload = field_config.upload_config
    label = field_config.label_for(language)
    min_files = upload.min_files if upload and upload.min_files is not None else (1 if field_config.required else None)
    max_files = upload.max_files if upload else None
    if min_files is not None and min_files > 0 and count < min_files:
        custom = resolve_localized(field_config.required_message, language, "") if min_files == 1 else ""
        if custom:
            return fill_tokens(custom, field=label)
        return fill_tokens(MIN_FILES_MESSAGE, field=label, min=min_files, plural="s" if min_files > 1 else "")
    if max_files is not None and max_files > 0 and count > max_files:
        return fill_tokens(MAX_FILES_MESSAGE, field=label, max=max_files, plural="s" if max_files > 1 else "")
    return ""


# =========================================================================
# Validator
# =========================================================================


@dataclass
class _GroupOutcome:
    has_any_row: bool = False
    has_any_enabled_row: bool = False
    has_any_valid_row: bool = False


class FormValidator:
    """Validates one form snapshot."""

    def __init__(
        self,
        definition: FormDefinition,
        language: Optional[str] = None,
        phase: str = "submit",
        collapsed_rows: Optional[CollapsedRows] = None,
        today: Optional[date] = None,
    ):
        self.definition = definition
        self.language = language
        self.phase = phase
        self.collapsed_rows = collapsed_rows or {}
        self.today = today
        self.row_filters = collect_step_row_filters(definition.steps)

    def validate(self, top: TopLookup) -> FormValidationResult:
        """Run all checks.

        Args:
            top: Record lookup carrying line items and virtual step fields

        Returns:
            FormValidationResult with passed status and all issues
        """
        issues: List[ValidationIssue] = []
        state = top.line_items
        trees = {tree.key: tree for tree in build_group_trees(self.definition, state)}

        for question in self.definition.questions:
            hidden = should_hide(question.visibility, top, self.today)
            if question.is_line_item_group:
                if not hidden:
                    issues.extend(self._validate_group_question(question, trees[question.id], top, state))
                continue
            if not hidden:
                issues.extend(self._required_issues(question, top.get_value(question.id), question.id, top))

            def is_hidden(field_id: str, _hidden=hidden) -> bool:
                target = self.definition.question(field_id)
                return _hidden if target is None else should_hide(target.visibility, top, self.today)

            outcomes = evaluate_rules(
                question.validation_rules, top, self.language, self.phase, is_hidden, self.today
            )
            issues.extend(self._outcome_issue(o, o.field_id) for o in outcomes)

        errors = [i for i in issues if i.is_error]
        passed = not errors
        logger.info(
            f"Form validation {'PASSED' if passed else 'FAILED'}: "
            f"{len(errors)} errors, {len(issues) - len(errors)} warnings"
        )
        return FormValidationResult(passed=passed, issues=issues)

    def _required_issues(
        self, field_config: FieldConfig, value: Any, path: str, lookup: FieldLookup
    ) -> List[ValidationIssue]:
        if field_config.type == QuestionType.FILE_UPLOAD:
            message = check_upload_counts(field_config, value, self.language)
            if message:
                return [ValidationIssue(field_path=path, message=message, source="upload")]
            return []
        if field_config.required and not is_field_filled(field_config, value, lookup):
            return [ValidationIssue(
                field_path=path, message=required_message(field_config, self.language), source="required"
            )]
        return []

    def _outcome_issue(self, outcome: RuleOutcome, path: str) -> ValidationIssue:
        if outcome.is_error:
            return ValidationIssue(field_path=path, message=outcome.message)
        return ValidationIssue(
            field_path=path,
            message=outcome.message,
            level="warning",
            display=outcome.warning_display.value if outcome.warning_display else None,
            view=outcome.warning_view.value if outcome.warning_view else None,
        )

    def _validate_group_question(
        self, question, node: GroupNode, top: TopLookup, state: LineItemState
    ) -> List[ValidationIssue]:
        issues: List[ValidationIssue] = []
        outcome = self._validate_rows(node, top, state, issues)
        if question.required and not outcome.has_any_valid_row:
            config = question.line_item_config
            if config.ui.gates_on_collapsed_fields:
                if not outcome.has_any_row or not outcome.has_any_enabled_row:
                    message = GROUP_FILL_COLLAPSED_MESSAGE
                else:
                    message = GROUP_VALID_ROW_MESSAGE
            else:
                message = GROUP_REQUIRED_MESSAGE
            issues.insert(0, ValidationIssue(field_path=question.id, message=message, source="group"))
        return issues

    def _validate_rows(
        self, node: GroupNode, top: FieldLookup, state: LineItemState, issues: List[ValidationIssue]
    ) -> _GroupOutcome:
        outcome = _GroupOutcome()
        config = node.config
        eligible: List[LineItemRow] = []
        for row in node.rows:
            if self.row_filters is not None and not self.row_filters.includes(node.path, row, self.today):
                continue
            outcome.has_any_row = True
            lookup = row_lookup_for(top, state, node.path, row)
            if is_row_disabled(config, node.path, row, lookup, self.collapsed_rows, self.language, self.today):
                continue
            outcome.has_any_enabled_row = True
            eligible.append(row)
            row_issues = self._validate_row(node, row, lookup)
            issues.extend(row_issues)
            row_valid = not any(i.is_error for i in row_issues)
            for child in node.children_of(row.id):
                self._validate_rows(child, top, state, issues)
            if row_valid:
                outcome.has_any_valid_row = True
        issues.extend(check_dedup_rules(node.key, eligible, config.dedup_rules, self.language))
        return outcome

    def _validate_row(self, node: GroupNode, row: LineItemRow, lookup: FieldLookup) -> List[ValidationIssue]:
        config: LineItemGroupConfig = node.config
        prefixes = (node.key, node.path.root_group_id)
        issues: List[ValidationIssue] = []

        def is_hidden(field_id: str) -> bool:
            return is_field_hidden(config.field(strip_field_prefix(field_id, prefixes)), lookup, self.today)

        for field_config in config.fields:
            if not is_hidden(field_config.id):
                path = field_path(node.key, field_config.id, row.id)
                issues.extend(self._required_issues(field_config, row.get(field_config.id), path, lookup))
            outcomes = evaluate_rules(
                field_config.validation_rules, lookup, self.language, self.phase, is_hidden, self.today
            )
            for outcome in outcomes:
                target = strip_field_prefix(outcome.field_id, prefixes)
                path = field_path(node.key, target, row.id) if config.field(target) else target
                issues.append(self._outcome_issue(outcome, path))
        return issues


def validate_form(
    definition: FormDefinition,
    top: TopLookup,
    language: Optional[str] = None,
    phase: str = "submit",
    collapsed_rows: Optional[Mapping[str, bool]] = None,
    today: Optional[date] = None,
) -> FormValidationResult:
    """Evaluate all errors and warnings."""
    return FormValidator(definition, language, phase, collapsed_rows, today).validate(top)


def validate_form_errors(
    definition: FormDefinition,
    top: TopLookup,
    language: Optional[str] = None,
    phase: str = "submit",
    collapsed_rows: Optional[Mapping[str, bool]] = None,
    today: Optional[date] = None,
) -> Dict[str, str]:
    """Errors only, first message per field path."""
    return validate_form(definition, top, language, phase, collapsed_rows, today).error_map()
