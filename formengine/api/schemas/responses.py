"""Response Pydantic models for the evaluation API."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str = Field(..., description="Error code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Any] = Field(None, description="Additional error details")


class IssueModel(BaseModel):
    field_path: str
    message: str
    level: str
    source: str
    display: Optional[str] = None
    view: Optional[str] = None


class WarningRoutingModel(BaseModel):
    top: List[Dict[str, str]] = Field(default_factory=list)
    by_field: Dict[str, List[str]] = Field(default_factory=dict)


class StepStatusModel(BaseModel):
    id: str
    index: int
    complete: bool
    valid: bool
    missing_required_count: int
    missing_valid_count: int
    error_count: int


class EvaluateResponse(BaseModel):
    """Everything a renderer needs for one snapshot."""
    passed: bool
    hidden: Dict[str, bool] = Field(default_factory=dict, description="Hidden flag per field path")
    errors: Dict[str, str] = Field(default_factory=dict, description="First error per field path")
    issues: List[IssueModel] = Field(default_factory=list)
    warnings: WarningRoutingModel = Field(default_factory=WarningRoutingModel)
    group_completeness: Dict[str, bool] = Field(default_factory=dict)
    steps: List[StepStatusModel] = Field(default_factory=list)
    max_complete_index: int = -1
    max_valid_index: int = -1
    virtual_fields: Dict[str, Any] = Field(default_factory=dict)


class RowFlowStateResponse(BaseModel):
    references: Dict[str, Any] = Field(default_factory=dict)
    segments: List[Dict[str, Any]] = Field(default_factory=list)
    prompts: List[Dict[str, Any]] = Field(default_factory=list)
    active_prompt_id: Optional[str] = None
    output_actions: List[str] = Field(default_factory=list)
    output_text: str = ""


class RowFlowActionResponse(BaseModel):
    action_id: str
    effects: List[Dict[str, Any]] = Field(default_factory=list)


class OrderedEntryBlockModel(BaseModel):
    missing_field_path: str
    scope: str
    reason: str


class OrderedEntryResponse(BaseModel):
    allowed: bool
    block: Optional[OrderedEntryBlockModel] = None
