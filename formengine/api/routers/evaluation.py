"""Evaluation API router.

Endpoints:
- POST /evaluate - visibility, validation, completeness and guided steps
- POST /row-flow/state - resolved row flow for one row
- POST /row-flow/actions/{action_id} - effect plan for one row-flow action
- POST /ordered-entry - first blocking field before an edit (or submit)

Every request carries the full snapshot; nothing is stored between calls.
"""

import logging
from typing import Tuple

from fastapi import APIRouter, HTTPException, status

from formengine.api.schemas.requests import (
    EvaluateRequest,
    FormSnapshot,
    OrderedEntryRequest,
    RowFlowRequest,
)
from formengine.api.schemas.responses import (
    EvaluateResponse,
    OrderedEntryResponse,
    RowFlowActionResponse,
    RowFlowStateResponse,
)
from formengine.core.config import get_settings
from formengine.core.logging import LogContext
from formengine.domain.forms.completeness import group_completeness
from formengine.domain.forms.definition import FormDefinition, LineItemGroupConfig
from formengine.domain.forms.line_item_state import LineItemRow, LineItemState
from formengine.domain.forms.lookup import TopLookup
from formengine.domain.forms.ordered_entry import (
    OrderedEntryTarget,
    find_first_ordered_entry_issue,
    find_ordered_entry_block,
)
from formengine.domain.forms.row_flow import RowFlowResolver
from formengine.domain.forms.steps import build_virtual_step_state
from formengine.domain.forms.validation import route_warnings, validate_form
from formengine.domain.forms.visibility import resolve_visibility

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["evaluation"])


# ===========================================================================
# Helpers
# ===========================================================================


def _load_snapshot(request: FormSnapshot) -> Tuple[FormDefinition, TopLookup, str]:
    """Parse the definition and build the record lookup.

    Raises:
        FormDefinitionError: If the definition is unusable (mapped to 422)
    """
    definition = FormDefinition.from_dict(request.definition)
    state = LineItemState.from_dict(request.line_items)
    top = TopLookup(request.values, state, record_meta=request.record_meta)
    language = request.language or get_settings().default_language
    return definition, top, language


def _locate_row(definition: FormDefinition, top: TopLookup, request: RowFlowRequest) -> Tuple[LineItemGroupConfig, LineItemRow]:
    config = definition.group_config(request.group_key)
    if config is None or config.row_flow is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No row flow for group '{request.group_key}'",
        )
    row = top.line_items.find_row(request.group_key, request.row_id)
    if row is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Row '{request.row_id}' not found in '{request.group_key}'",
        )
    return config, row


# ===========================================================================
# Endpoints
# ===========================================================================


@router.post("/evaluate", response_model=EvaluateResponse)
async def evaluate_snapshot(request: EvaluateRequest) -> EvaluateResponse:
    """Evaluate one snapshot.

    Guided-step status is computed first; its virtual fields are then
    visible to every visibility and validation condition.
    """
    definition, top, language = _load_snapshot(request)
    phase = request.phase or get_settings().default_phase

    with LogContext(form_id=definition.id or "", phase=phase):
        virtual = build_virtual_step_state(definition, top, request.active_step_id, language)
        if virtual is not None:
            top = top.with_virtual_fields(virtual.resolve)

        result = validate_form(definition, top, language, phase, request.collapsed_rows)
        routing = route_warnings(result.warnings, request.view)
        completeness = group_completeness(definition, top, top.line_items, request.collapsed_rows, language)
        hidden = resolve_visibility(definition, top)

    return EvaluateResponse(
        passed=result.passed,
        hidden=hidden,
        errors=result.error_map(),
        issues=[issue.to_dict() for issue in result.issues],
        warnings=routing.to_dict(),
        group_completeness=completeness,
        steps=[step.to_dict() for step in virtual.steps] if virtual else [],
        max_complete_index=virtual.max_complete_index if virtual else -1,
        max_valid_index=virtual.max_valid_index if virtual else -1,
        virtual_fields=virtual.to_dict() if virtual else {},
    )


@router.post("/row-flow/state", response_model=RowFlowStateResponse)
async def row_flow_state(request: RowFlowRequest) -> RowFlowStateResponse:
    """Resolved references, segments and prompts for one row."""
    definition, top, _ = _load_snapshot(request)
    config, row = _locate_row(definition, top, request)
    resolver = RowFlowResolver(config.row_flow, request.group_key, row, top, config.sub_group_ids)
    state = resolver.resolve_state(request.active_field_path, request.active_field_type)
    return RowFlowStateResponse(
        **state.to_dict(),
        output_text=state.output_text(config.row_flow.output.separator),
    )


@router.post("/row-flow/actions/{action_id}", response_model=RowFlowActionResponse)
async def row_flow_action(action_id: str, request: RowFlowRequest) -> RowFlowActionResponse:
    """Effects the caller must apply for one row-flow action."""
    definition, top, _ = _load_snapshot(request)
    config, row = _locate_row(definition, top, request)
    resolver = RowFlowResolver(config.row_flow, request.group_key, row, top, config.sub_group_ids)
    plan = resolver.plan_action(action_id)
    if plan is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Action '{action_id}' is unknown or not available for this row",
        )
    logger.info(f"Planned {len(plan.effects)} effects for action '{action_id}' on '{request.group_key}'")
    return RowFlowActionResponse(**plan.to_dict())


@router.post("/ordered-entry", response_model=OrderedEntryResponse)
async def ordered_entry(request: OrderedEntryRequest) -> OrderedEntryResponse:
    """First unsatisfied field before the target, or before submit when no target is given."""
    definition, top, language = _load_snapshot(request)
    if request.target is None:
        block = find_first_ordered_entry_issue(
            definition, top, request.errors, request.collapsed_rows, language
        )
    else:
        target = OrderedEntryTarget(**request.target.model_dump())
        block = find_ordered_entry_block(
            definition, top, target, request.errors, request.collapsed_rows, language
        )
    if block is None:
        return OrderedEntryResponse(allowed=True)
    return OrderedEntryResponse(allowed=False, block=block.to_dict())
