"""Workflow schemas: execution lifecycle and API request/response models."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class ExecutionStatus(str, Enum):
    """Workflow execution lifecycle states."""
    ACTIVE = "active"
    PROCESSING = "processing"
    DELAYED = "delayed"
    COMPLETED = "completed"
    CANCEL = "cancel"
    FAIL = "fail"
    ERROR = "error"


# States an advancer may claim from
CLAIMABLE_STATUSES = (ExecutionStatus.ACTIVE, ExecutionStatus.DELAYED)

TERMINAL_STATUSES = (
    ExecutionStatus.COMPLETED,
    ExecutionStatus.CANCEL,
    ExecutionStatus.FAIL,
    ExecutionStatus.ERROR,
)


class WorkflowStepDefinition(BaseModel):
    """One step of a workflow definition.

    `config` holds the job descriptor fields for `type` (url, function_name,
    code, ...) with {{placeholders}}, plus an optional `set_vars` mapping
    resolved after the step runs.
    """

    step_number: Optional[int] = Field(default=None, description="Defaults to position (1-based)")
    name: str = ""
    type: str = Field(description="webhook | internal_function | custom_code")
    config: dict[str, Any] = Field(default_factory=dict)


class CreateWorkflowRequest(BaseModel):
    name: str
    description: str = ""
    steps: list[WorkflowStepDefinition] = Field(default_factory=list)


class StartWorkflowRequest(BaseModel):
    init_data: dict[str, Any] = Field(default_factory=dict)


class WorkflowSummary(BaseModel):
    id: str
    name: str
    description: str = ""
    step_count: int = 0
    created_at: Optional[str] = None


class StartWorkflowResponse(BaseModel):
    success: bool = True
    execution_id: str
    workflow_id: str
    status: str
    advance_result: dict[str, Any] = Field(default_factory=dict)
