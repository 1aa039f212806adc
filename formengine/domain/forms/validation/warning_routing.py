"""Routing of warning issues to top-of-form and per-field slots.

Routing only classifies; rendering belongs to the caller.
"""

from typing import Iterable, Optional

from formengine.domain.forms.validation.validation_result import ValidationIssue, WarningRouting

_DISPLAYS = ("top", "field", "both")


def _allowed_in_view(issue: ValidationIssue, view: Optional[str]) -> bool:
    if not view or not issue.view or issue.view == "both":
        return True
    return issue.view == view


def route_warnings(issues: Iterable[ValidationIssue], view: Optional[str] = None) -> WarningRouting:
    """Split warnings into top and per-field lists, de-duplicated.

    Args:
        issues: Issues from validation (errors are ignored)
        view: Current view ("edit" or "summary"); None accepts every warning

    Returns:
        WarningRouting with `top` entries and `by_field` messages
    """
    routing = WarningRouting()
    top_seen = set()
    default_display = "both" if view == "edit" else "top"
    for issue in issues:
        if issue.is_error or not _allowed_in_view(issue, view):
            continue
        message = (issue.message or "").strip()
        if not issue.field_path or not message:
            continue
        display = issue.display if issue.display in _DISPLAYS else default_display
        if display in ("top", "both") and (issue.field_path, message) not in top_seen:
            top_seen.add((issue.field_path, message))
            routing.top.append({"field_path": issue.field_path, "message": message})
        if display in ("field", "both"):
            messages = routing.by_field.setdefault(issue.field_path, [])
            if message not in messages:
                messages.append(message)
    return routing
