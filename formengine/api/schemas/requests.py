"""Request Pydantic models for the evaluation API."""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class FormSnapshot(BaseModel):
    """A form definition plus one record to evaluate against it."""
    definition: Dict[str, Any] = Field(..., description="Form definition (questions, steps)")
    values: Dict[str, Any] = Field(default_factory=dict, description="Top-level question values")
    line_items: Dict[str, List[Dict[str, Any]]] = Field(
        default_factory=dict,
        description="Rows keyed by group key: {groupKey: [{id, values}]}",
    )
    record_meta: Optional[Dict[str, Any]] = Field(default=None, description="Record meta (status, pdfUrl, id, ...)")
    language: Optional[str] = Field(default=None, description="EN, FR or NL; defaults from settings")

    @field_validator("language")
    @classmethod
    def normalize_language(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().upper() if v and v.strip() else None


class EvaluateRequest(FormSnapshot):
    """Request a full evaluation of a snapshot."""
    phase: Optional[Literal["submit", "followup"]] = Field(default=None, description="Validation phase")
    collapsed_rows: Dict[str, bool] = Field(default_factory=dict, description="Collapse state keyed by groupKey::rowId")
    active_step_id: Optional[str] = Field(default=None, description="Active guided step")
    view: Optional[Literal["edit", "summary"]] = Field(default=None, description="View used for warning routing")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "definition": {"questions": [{"id": "NAME", "type": "TEXT", "required": True}]},
                "values": {"NAME": ""},
                "language": "EN",
            }
        }
    )


class RowFlowRequest(FormSnapshot):
    """Locate one row whose group carries a row flow."""
    group_key: str = Field(..., min_length=1, description="Group key of the row")
    row_id: str = Field(..., min_length=1, description="Row id")
    active_field_path: Optional[str] = Field(default=None, description="Field currently being edited")
    active_field_type: Optional[str] = Field(default=None, description="Type of the field being edited")


class OrderedEntryTargetModel(BaseModel):
    """The field about to be edited."""
    scope: Literal["top", "line"]
    question_id: Optional[str] = None
    group_key: Optional[str] = None
    row_id: Optional[str] = None
    field_id: Optional[str] = None


class OrderedEntryRequest(FormSnapshot):
    """Check whether an edit may proceed; omit `target` to scan the whole form."""
    target: Optional[OrderedEntryTargetModel] = None
    errors: Dict[str, str] = Field(default_factory=dict, description="Current errors keyed by field path")
    collapsed_rows: Dict[str, bool] = Field(default_factory=dict)
