"""Form validation: required checks, rules, uploads, dedup and warning routing."""

from formengine.domain.forms.validation.validation_result import (
    FormValidationResult,
    ValidationIssue,
    WarningRouting,
)
from formengine.domain.forms.validation.dedup import check_dedup_rules, find_duplicate_rows
from formengine.domain.forms.validation.form_validation import (
    FormValidator,
    StepRowFilters,
    collect_step_row_filters,
    validate_form,
    validate_form_errors,
)
from formengine.domain.forms.validation.warning_routing import route_warnings

__all__ = [
    "FormValidator",
    "FormValidationResult",
    "ValidationIssue",
    "WarningRouting",
    "StepRowFilters",
    "check_dedup_rules",
    "collect_step_row_filters",
    "find_duplicate_rows",
    "route_warnings",
    "validate_form",
    "validate_form_errors",
]
