"""Data classes for form validation output."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional


@dataclass
class ValidationIssue:
    """A single validation issue.

    Attributes:
        field_path: Question id, or `<groupKey>__<fieldId>__<rowId>` for row fields
        message: Localized, human-readable message
        level: "error" blocks submission, "warning" is informational
        source: Which check produced the issue
        display: Warning routing hint (top/field/both), None for errors
        view: Warning view filter (edit/summary/both), None for errors
    """
    field_path: str
    message: str
    level: Literal["error", "warning"] = "error"
    source: Literal["required", "rule", "upload", "group", "dedup"] = "rule"
    display: Optional[str] = None
    view: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.level == "error"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "field_path": self.field_path,
            "message": self.message,
            "level": self.level,
            "source": self.source,
            "display": self.display,
            "view": self.view,
        }


@dataclass
class FormValidationResult:
    """Result of validating one form snapshot.

    Attributes:
        passed: True if no error-level issues
        issues: All issues in evaluation order
    """
    passed: bool
    issues: List[ValidationIssue] = field(default_factory=list)

    @property
    def errors(self) -> List[ValidationIssue]:
        """Get only error-level issues."""
        return [i for i in self.issues if i.is_error]

    @property
    def warnings(self) -> List[ValidationIssue]:
        """Get only warning-level issues."""
        return [i for i in self.issues if not i.is_error]

    def error_map(self) -> Dict[str, str]:
        """First error message per field path."""
        result: Dict[str, str] = {}
        for issue in self.errors:
            result.setdefault(issue.field_path, issue.message)
        return result

    @property
    def error_summary(self) -> str:
        """Get a summary of all errors for logging/display."""
        return "; ".join(f"{e.field_path}: {e.message}" for e in self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "errors": self.error_map(),
            "issues": [i.to_dict() for i in self.issues],
        }


@dataclass
class WarningRouting:
    """Warnings split by where a collaborator should render them."""
    top: List[Dict[str, str]] = field(default_factory=list)
    by_field: Dict[str, List[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"top": list(self.top), "by_field": {k: list(v) for k, v in self.by_field.items()}}
