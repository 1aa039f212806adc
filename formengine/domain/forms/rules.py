"""Validation rule evaluation.

Each rule runs independently: a rule that fails to evaluate is logged and
skipped, never aborting the remaining rules.

Check precedence inside `then` is fixed: required, min, max, allowed,
disallowed. The first failing check produces the message.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Optional

from formengine.domain.forms.conditions import evaluate, first_field_id
from formengine.domain.forms.definition import (
    RuleLevel,
    ThenConfig,
    ValidationRule,
    WarningDisplay,
    WarningView,
)
from formengine.domain.forms.lookup import FieldLookup
from formengine.domain.forms.values import (
    as_value_list,
    format_number,
    is_empty_value,
    normalize_token,
    numeric_values,
    resolve_localized,
    to_number,
)

logger = logging.getLogger(__name__)

DEFAULT_RULE_MESSAGES: Dict[str, Dict[str, str]] = {
    "required": {
        "en": "This field is required.",
        "fr": "Ce champ est obligatoire.",
        "nl": "Dit veld is verplicht.",
    },
    "allowed": {
        "en": "Please use an allowed value.",
        "fr": "Veuillez utiliser une valeur autorisée.",
        "nl": "Gebruik een toegestane waarde.",
    },
    "disallowed": {
        "en": "This combination is not allowed.",
        "fr": "Cette combinaison n'est pas autorisée.",
        "nl": "Deze combinatie is niet toegestaan.",
    },
}

HiddenCheck = Callable[[str], bool]


@dataclass(frozen=True)
class RuleOutcome:
    """One failed check or standalone warning."""

    field_id: str
    message: str
    level: RuleLevel
    warning_display: Optional[WarningDisplay] = None
    warning_view: Optional[WarningView] = None

    @property
    def is_error(self) -> bool:
        return self.level == RuleLevel.ERROR


def _limit_message(operator: str, limit: Any) -> str:
    return f"Value must be {operator} {limit}."


def _resolve_bound(literal: Any, field_id: Optional[str], lookup: Optional[FieldLookup]) -> Optional[tuple]:
    """(number, display text) for a min/max bound; None skips the check."""
    if literal is not None:
        number = to_number(literal)
        return (number, str(literal).strip()) if number is not None else None
    if field_id and lookup is not None:
        number = to_number(lookup.get_value(field_id))
        return (number, format_number(number)) if number is not None else None
    return None


def check_rule(
    value: Any,
    then: ThenConfig,
    language: Optional[str] = None,
    message: Any = None,
    lookup: Optional[FieldLookup] = None,
) -> str:
    """Run `then` checks against a value.

    Args:
        value: Target field value
        then: Checks to apply
        language: Message language
        message: Custom message overriding every default
        lookup: Source for minFieldId/maxFieldId bounds

    Returns:
        Failure message, or "" when all checks pass
    """
    custom = resolve_localized(message, language, "")
    values = as_value_list(value)

    if then.required and not any(not is_empty_value(v) for v in values):
        return custom or resolve_localized(DEFAULT_RULE_MESSAGES["required"], language)

    min_bound = _resolve_bound(then.min, then.min_field_id, lookup)
    if min_bound is not None and any(n < min_bound[0] for n in numeric_values(value)):
        return custom or _limit_message(">=", min_bound[1])

    max_bound = _resolve_bound(then.max, then.max_field_id, lookup)
    if max_bound is not None and any(n > max_bound[0] for n in numeric_values(value)):
        return custom or _limit_message("<=", max_bound[1])

    present = [v for v in values if not is_empty_value(v)]
    if then.allowed:
        allowed = {normalize_token(a) for a in then.allowed}
        if any(normalize_token(v) not in allowed for v in present):
            return custom or resolve_localized(DEFAULT_RULE_MESSAGES["allowed"], language)

    if then.disallowed:
        disallowed = {normalize_token(d) for d in then.disallowed}
        if any(normalize_token(v) in disallowed for v in present):
            return custom or resolve_localized(DEFAULT_RULE_MESSAGES["disallowed"], language)

    return ""


def evaluate_rule(
    rule: ValidationRule,
    lookup: FieldLookup,
    language: Optional[str] = None,
    phase: str = "submit",
    is_hidden: Optional[HiddenCheck] = None,
    today: Optional[date] = None,
) -> Optional[RuleOutcome]:
    """Evaluate one rule; None when it does not apply or passes."""
    if not rule.applies_to_phase(phase):
        return None
    if not evaluate(rule.when, lookup, today):
        return None

    if rule.then is None:
        anchor = first_field_id(rule.when)
        text = resolve_localized(rule.message, language, "").strip()
        if not anchor or not text:
            return None
        return RuleOutcome(anchor, text, RuleLevel.WARNING, rule.warning_display, rule.warning_view)

    target = rule.then.field_id
    if is_hidden is not None and is_hidden(target):
        return None
    text = check_rule(lookup.get_value(target), rule.then, language, rule.message, lookup)
    if not text:
        return None
    return RuleOutcome(target, text, rule.level, rule.warning_display, rule.warning_view)


def evaluate_rules(
    rules: Iterable[ValidationRule],
    lookup: FieldLookup,
    language: Optional[str] = None,
    phase: str = "submit",
    is_hidden: Optional[HiddenCheck] = None,
    today: Optional[date] = None,
) -> List[RuleOutcome]:
    """Evaluate rules in order, skipping any rule that raises."""
    outcomes: List[RuleOutcome] = []
    for index, rule in enumerate(rules):
        try:
            outcome = evaluate_rule(rule, lookup, language, phase, is_hidden, today)
        except Exception as e:
            logger.warning(f"Skipping validation rule {index}: {e}")
            continue
        if outcome is not None:
            outcomes.append(outcome)
    return outcomes


def rule_errors(
    rules: Iterable[ValidationRule],
    lookup: FieldLookup,
    language: Optional[str] = None,
    phase: str = "submit",
    is_hidden: Optional[HiddenCheck] = None,
    today: Optional[date] = None,
) -> List[RuleOutcome]:
    return [o for o in evaluate_rules(rules, lookup, language, phase, is_hidden, today) if o.is_error]
