"""Guided-step status and virtual step fields.

Each step tallies three counters over its targets (header targets first,
then the step's own, de-duplicated by kind and id):

- missing_required_count: completion semantics. Required fields use
  is_empty_value; non-required step-visible fields must be explicitly
  set (is_unset_for_step, so boolean False counts as unset).
- missing_valid_count: validity semantics. Only required fields count.
- error_count: rule errors on targeted fields.

INVARIANTS:
- complete == (missing_required_count == 0).
- valid == (missing_valid_count == 0 and error_count == 0).
- max_complete_index / max_valid_index are contiguous prefixes from step 0
  (-1 when step 0 fails).
- A row filter matching zero rows adds a missing-validity unit.
- A progressive row locked by its expand gate only contributes its
  collapsed fields, and only when the step targets expanded content.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

from formengine.domain.forms.completeness import collapsed_field_blockers
from formengine.domain.forms.conditions import row_filter_matches
from formengine.domain.forms.definition import (
    DEFAULT_STEP_FIELD_PREFIX,
    FieldConfig,
    FormDefinition,
    LineItemGroupConfig,
    QuestionConfig,
    StepTarget,
)
from formengine.domain.forms.group_path import GroupPath, strip_field_prefix
from formengine.domain.forms.group_tree import row_lookup_for
from formengine.domain.forms.line_item_state import LineItemRow
from formengine.domain.forms.lookup import FieldLookup, TopLookup
from formengine.domain.forms.option_filter import is_field_filled
from formengine.domain.forms.rules import rule_errors
from formengine.domain.forms.values import is_unset_for_step
from formengine.domain.forms.visibility import is_field_hidden

logger = logging.getLogger(__name__)


# =========================================================================
# Result types
# =========================================================================


@dataclass
class StepTally:
    missing_complete: int = 0
    missing_valid: int = 0
    errors: int = 0

    def add(self, other: "StepTally") -> None:
        self.missing_complete += other.missing_complete
        self.missing_valid += other.missing_valid
        self.errors += other.errors


@dataclass(frozen=True)
class GuidedStepStatus:
    id: str
    index: int
    complete: bool
    valid: bool
    missing_required_count: int
    missing_valid_count: int
    error_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "index": self.index,
            "complete": self.complete,
            "valid": self.valid,
            "missing_required_count": self.missing_required_count,
            "missing_valid_count": self.missing_valid_count,
            "error_count": self.error_count,
        }


@dataclass(frozen=True)
class GuidedStepsStatus:
    steps: List[GuidedStepStatus] = field(default_factory=list)
    max_complete_index: int = -1
    max_valid_index: int = -1

    def step(self, step_id: str) -> Optional[GuidedStepStatus]:
        for status in self.steps:
            if status.id == step_id:
                return status
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "steps": [s.to_dict() for s in self.steps],
            "max_complete_index": self.max_complete_index,
            "max_valid_index": self.max_valid_index,
        }


def contiguous_max_index(flags: Sequence[bool]) -> int:
    """Index of the last True in the unbroken run starting at 0; -1 if none."""
    result = -1
    for index, flag in enumerate(flags):
        if not flag:
            break
        result = index
    return result


# =========================================================================
# Virtual step fields
# =========================================================================


@dataclass(frozen=True)
class VirtualStepState:
    """Step progress exposed to conditions as `<prefix>*` fields."""

    prefix: str = DEFAULT_STEP_FIELD_PREFIX
    active_step_id: str = ""
    active_step_index: int = 0
    max_valid_index: int = -1
    max_complete_index: int = -1
    steps: Sequence[GuidedStepStatus] = ()

    @classmethod
    def from_status(
        cls,
        status: GuidedStepsStatus,
        prefix: str = DEFAULT_STEP_FIELD_PREFIX,
        active_step_id: Optional[str] = None,
    ) -> "VirtualStepState":
        """Build virtual state; the active step defaults to the first step."""
        active = status.step(active_step_id) if active_step_id else None
        if active is None and status.steps:
            if active_step_id:
                logger.debug(f"Unknown active step '{active_step_id}', using first step")
            active = status.steps[0]
        return cls(
            prefix=prefix or DEFAULT_STEP_FIELD_PREFIX,
            active_step_id=active.id if active else "",
            active_step_index=active.index if active else 0,
            max_valid_index=status.max_valid_index,
            max_complete_index=status.max_complete_index,
            steps=tuple(status.steps),
        )

    def resolve(self, field_id: str) -> Any:
        return resolve_virtual_step_field(field_id, self)

    def to_dict(self) -> Dict[str, Any]:
        values: Dict[str, Any] = {
            self.prefix: self.active_step_id,
            f"{self.prefix}Index": self.active_step_index,
            f"{self.prefix}MaxValidIndex": self.max_valid_index,
            f"{self.prefix}MaxCompleteIndex": self.max_complete_index,
        }
        for step in self.steps:
            values[f"{self.prefix}Valid_{step.id}"] = "true" if step.valid else "false"
            values[f"{self.prefix}Complete_{step.id}"] = "true" if step.complete else "false"
        return values


def resolve_virtual_step_field(field_id: str, state: VirtualStepState) -> Any:
    """Value of a virtual step field, or None when the id is not one."""
    prefix = state.prefix or DEFAULT_STEP_FIELD_PREFIX
    fid = (field_id or "").strip()
    if not fid:
        return None
    if fid == prefix:
        return state.active_step_id
    if fid == f"{prefix}Index":
        return state.active_step_index
    if fid == f"{prefix}MaxValidIndex":
        return state.max_valid_index
    if fid == f"{prefix}MaxCompleteIndex":
        return state.max_complete_index
    for marker, attr in ((f"{prefix}Valid_", "valid"), (f"{prefix}Complete_", "complete")):
        if fid.startswith(marker):
            step_id = fid[len(marker):]
            match = next((s for s in state.steps if s.id == step_id), None)
            return "true" if match is not None and getattr(match, attr) else "false"
    return None


# =========================================================================
# Status computation
# =========================================================================


class StepStatusEvaluator:
    """Computes guided-step status for one snapshot."""

    def __init__(
        self,
        definition: FormDefinition,
        top: TopLookup,
        language: Optional[str] = None,
        today: Optional[date] = None,
    ):
        self.definition = definition
        self.top = top
        self.state = top.line_items
        self.language = language
        self.today = today

    def evaluate(self) -> GuidedStepsStatus:
        steps_config = self.definition.steps
        if steps_config is None or not steps_config.is_guided:
            return GuidedStepsStatus()

        statuses = []
        for index, step in enumerate(steps_config.items):
            tally = StepTally()
            for target in steps_config.targets_for(step):
                tally.add(self.evaluate_target(target))
            statuses.append(GuidedStepStatus(
                id=step.id,
                index=index,
                complete=tally.missing_complete == 0,
                valid=tally.missing_valid == 0 and tally.errors == 0,
                missing_required_count=tally.missing_complete,
                missing_valid_count=tally.missing_valid,
                error_count=tally.errors,
            ))
        result = GuidedStepsStatus(
            steps=statuses,
            max_complete_index=contiguous_max_index([s.complete for s in statuses]),
            max_valid_index=contiguous_max_index([s.valid for s in statuses]),
        )
        logger.debug(
            f"Step status: max_complete={result.max_complete_index}, max_valid={result.max_valid_index}"
        )
        return result

    def evaluate_target(self, target: StepTarget) -> StepTally:
        question = self.definition.question(target.id)
        if question is None:
            return StepTally()
        if target.kind == "question":
            return self._top_question(question)
        if target.kind == "lineGroup" and question.is_line_item_group:
            return self._line_group(question, target)
        return StepTally()

    def _top_question(self, question: QuestionConfig) -> StepTally:
        tally = StepTally()
        if is_field_hidden(question, self.top, self.today):
            return tally
        raw = self.top.get_value(question.id)
        if question.required:
            if not is_field_filled(question, raw, self.top):
                tally.missing_valid += 1
                tally.missing_complete += 1
        elif is_unset_for_step(raw):
            tally.missing_complete += 1

        def hidden(field_id: str) -> bool:
            return is_field_hidden(self.definition.question(field_id), self.top, self.today)

        errors = rule_errors(question.validation_rules, self.top, self.language, "submit", hidden, self.today)
        tally.errors = sum(1 for e in errors if e.field_id == question.id)
        return tally

    def _field_tally(
        self,
        field_config: FieldConfig,
        row: LineItemRow,
        lookup: FieldLookup,
        for_complete: bool,
        for_valid: bool,
        strip_prefixes: Sequence[str],
        hidden,
    ) -> StepTally:
        tally = StepTally()
        if hidden(field_config.id):
            return tally
        raw = row.get(field_config.id)
        filled = is_field_filled(field_config, raw, lookup)
        if for_complete:
            if field_config.required:
                tally.missing_complete += 0 if filled else 1
            elif is_unset_for_step(raw):
                tally.missing_complete += 1
        if for_valid and field_config.required and not filled:
            tally.missing_valid += 1
        if for_valid and field_config.validation_rules:
            errors = rule_errors(
                field_config.validation_rules, lookup, self.language, "submit", hidden, self.today
            )
            tally.errors += sum(
                1 for e in errors if strip_field_prefix(e.field_id, strip_prefixes) == field_config.id
            )
        return tally

    def _line_group(self, question: QuestionConfig, target: StepTarget) -> StepTally:
        tally = StepTally()
        if is_field_hidden(question, self.top, self.today):
            return tally
        config = question.line_item_config
        path = GroupPath.root(question.id)
        allowed = list(target.fields) if target.fields is not None else list(config.field_ids)
        collapsed_ids = set(config.ui.collapsed_field_ids)
        targets_expanded = any(fid not in collapsed_ids for fid in allowed) or bool(target.sub_groups)
        apply_gate = config.ui.gates_on_collapsed_fields and targets_expanded

        included_complete = 0
        included_valid = 0
        any_complete_row = False
        any_valid_row = False

        for row in self.state.rows(path):
            for_complete = row_filter_matches(target.rows, row.values, self.today)
            for_valid = row_filter_matches(target.effective_validation_rows, row.values, self.today)
            if not for_complete and not for_valid:
                continue
            included_complete += int(for_complete)
            included_valid += int(for_valid)

            lookup = row_lookup_for(self.top, self.state, path, row)
            locked = apply_gate and bool(
                collapsed_field_blockers(config, row, lookup, self.language, self.today)
            )
            row_fields = [fid for fid in allowed if fid in collapsed_ids] if locked else allowed
            if locked and not row_fields:
                continue

            def hidden(field_id: str, _config=config, _lookup=lookup) -> bool:
                return is_field_hidden(_config.field(strip_field_prefix(field_id, (path.key,))), _lookup, self.today)

            row_tally = StepTally()
            for fid in row_fields:
                field_config = config.field(fid)
                if field_config is None:
                    continue
                row_tally.add(self._field_tally(
                    field_config, row, lookup, for_complete, for_valid, (path.key,), hidden
                ))

            if not locked:
                for sub_target in target.sub_groups:
                    sub_config = config.sub_group(sub_target.id)
                    if sub_config is None:
                        continue
                    row_tally.add(self._sub_group(sub_config, sub_target, path.child(row.id, sub_config.id)))

            tally.add(row_tally)
            if for_complete and row_tally.missing_complete == 0:
                any_complete_row = True
            if for_valid and row_tally.missing_valid == 0 and row_tally.errors == 0:
                any_valid_row = True

        if target.effective_validation_rows is not None and included_valid == 0:
            tally.missing_valid += 1
        if question.required:
            if included_complete == 0:
                tally.missing_complete += 1
            if included_valid == 0:
                tally.missing_valid += 1
            if included_complete > 0 and not any_complete_row:
                tally.missing_complete += 1
            if included_valid > 0 and not any_valid_row:
                tally.missing_valid += 1
        return tally

    def _sub_group(self, config: LineItemGroupConfig, target, path: GroupPath) -> StepTally:
        tally = StepTally()
        allowed = list(target.fields) if target.fields is not None else list(config.field_ids)
        prefixes = (path.key, path.root_group_id)
        for row in self.state.rows(path):
            for_complete = row_filter_matches(target.rows, row.values, self.today)
            for_valid = row_filter_matches(target.effective_validation_rows, row.values, self.today)
            if not for_complete and not for_valid:
                continue
            lookup = row_lookup_for(self.top, self.state, path, row)

            def hidden(field_id: str, _lookup=lookup) -> bool:
                return is_field_hidden(config.field(strip_field_prefix(field_id, prefixes)), _lookup, self.today)

            for fid in allowed:
                field_config = config.field(strip_field_prefix(fid, prefixes))
                if field_config is None:
                    continue
                tally.add(self._field_tally(
                    field_config, row, lookup, for_complete, for_valid, prefixes, hidden
                ))
        return tally


def compute_step_status(
    definition: FormDefinition,
    top: TopLookup,
    language: Optional[str] = None,
    today: Optional[date] = None,
) -> GuidedStepsStatus:
    """Guided-step status for a form; empty when the form has no guided steps."""
    return StepStatusEvaluator(definition, top, language, today).evaluate()


def build_virtual_step_state(
    definition: FormDefinition,
    top: TopLookup,
    active_step_id: Optional[str] = None,
    language: Optional[str] = None,
    today: Optional[date] = None,
) -> Optional[VirtualStepState]:
    """Step status plus virtual state; None for forms without guided steps."""
    if definition.steps is None or not definition.steps.is_guided:
        return None
    status = compute_step_status(definition, top, language, today)
    return VirtualStepState.from_status(status, definition.steps.prefix, active_step_id)
