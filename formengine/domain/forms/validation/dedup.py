"""Line-item dedup rules.

Sibling rows are bucketed by the composite key of their dedup fields.
Rows with any empty key field are skipped. Every row in a bucket of two
or more is flagged on its first key field.
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence

from formengine.domain.forms.definition import DedupRule
from formengine.domain.forms.group_path import build_dedup_key, field_path, format_dedup_value
from formengine.domain.forms.line_item_state import LineItemRow
from formengine.domain.forms.validation.validation_result import ValidationIssue
from formengine.domain.forms.values import fill_tokens, resolve_localized

DEFAULT_DEDUP_MESSAGE: Dict[str, str] = {
    "en": "This entry already exists in this list.",
    "fr": "Cette entrée existe déjà dans cette liste.",
    "nl": "Deze invoer bestaat al in deze lijst.",
}


def find_duplicate_rows(rows: Sequence[LineItemRow], field_ids: Sequence[str]) -> List[List[str]]:
    """Buckets (row ids, in row order) with two or more rows sharing a key."""
    buckets: Dict[str, List[str]] = {}
    for row in rows:
        key = build_dedup_key(row.values, field_ids)
        if key is None:
            continue
        buckets.setdefault(key, []).append(row.id)
    return [ids for ids in buckets.values() if len(ids) > 1]


def dedup_message(rule: DedupRule, language: Optional[str], value: Any = None) -> str:
    template = resolve_localized(rule.message, language, "") or resolve_localized(DEFAULT_DEDUP_MESSAGE, language)
    token = format_dedup_value(value)
    return fill_tokens(template, value=token) if token else template


def check_dedup_rules(
    group_key: str,
    rows: Sequence[LineItemRow],
    rules: Sequence[DedupRule],
    language: Optional[str] = None,
) -> List[ValidationIssue]:
    """Dedup issues for one group instance's rows."""
    issues: List[ValidationIssue] = []
    if len(rows) < 2:
        return issues
    by_id: Mapping[str, LineItemRow] = {row.id: row for row in rows}
    for rule in rules:
        first_field = rule.fields[0]
        for bucket in find_duplicate_rows(rows, rule.fields):
            for row_id in bucket:
                value = by_id[row_id].get(first_field)
                issues.append(ValidationIssue(
                    field_path=field_path(group_key, first_field, row_id),
                    message=dedup_message(rule, language, value),
                    source="dedup",
                ))
    return issues
