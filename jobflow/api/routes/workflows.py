"""Workflow routes: definitions, starting executions, manual advance.

Endpoints:
    POST /v1/workflows                                  Create a workflow definition
    GET  /v1/workflows                                  List workflows
    GET  /v1/workflows/{workflow_id}                    Definition with steps
    POST /v1/workflows/{workflow_id}/start              Start an execution and advance it once
    GET  /v1/workflow-executions/{execution_id}         Execution state, step audit, pending jobs
    POST /v1/workflow-executions/{execution_id}/advance Trigger one advance cycle
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from jobflow.api.auth import Identity, require_identity
from jobflow.errors import NotFoundError, ValidationError
from jobflow.scheduler.job_store import list_jobs_for_execution
from jobflow.workflows import store
from jobflow.workflows.advancer import advance_workflow
from jobflow.workflows.schemas import (
    CreateWorkflowRequest,
    StartWorkflowRequest,
    StartWorkflowResponse,
    WorkflowSummary,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["workflows"], dependencies=[Depends(require_identity)])


@router.post("/workflows", status_code=201)
async def create_workflow(
    request: CreateWorkflowRequest,
    identity: Identity = Depends(require_identity),
):
    """Create a workflow from an ordered list of steps."""
    try:
        return store.create_workflow(
            name=request.name,
            steps=[s.model_dump() for s in request.steps],
            description=request.description,
            created_by=identity.subject,
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/workflows", response_model=list[WorkflowSummary])
async def list_workflows():
    return store.list_workflows()


@router.get("/workflows/{workflow_id}")
async def get_workflow(workflow_id: str):
    workflow = store.get_workflow(workflow_id)
    if workflow is None:
        raise HTTPException(status_code=404, detail=f"Workflow not found: {workflow_id}")
    return workflow


@router.post("/workflows/{workflow_id}/start", response_model=StartWorkflowResponse, status_code=201)
def start_workflow(
    workflow_id: str,
    request: Optional[StartWorkflowRequest] = None,
    identity: Identity = Depends(require_identity),
):
    """Create an execution seeded with init_data and run the first advance cycle."""
    init_data = request.init_data if request else {}
    try:
        execution = store.create_execution(workflow_id, init_data, created_by=identity.subject)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    execution_id = execution["id"]
    try:
        advance_result = advance_workflow(execution_id)
    except Exception as e:
        logger.error(f"Initial advance of {execution_id} failed: {e}", exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=f"Execution {execution_id} created but advancing failed: {e}",
        )

    current = store.get_execution(execution_id)
    return StartWorkflowResponse(
        execution_id=execution_id,
        workflow_id=workflow_id,
        status=current["status"],
        advance_result=advance_result,
    )


@router.get("/workflow-executions/{execution_id}")
async def get_workflow_execution(execution_id: str):
    execution = store.get_execution(execution_id, include_steps=True)
    if execution is None:
        raise HTTPException(status_code=404, detail=f"Execution not found: {execution_id}")
    execution["scheduled_jobs"] = list_jobs_for_execution(execution_id)
    return execution


@router.post("/workflow-executions/{execution_id}/advance")
def advance_workflow_execution(execution_id: str):
    """Advance an execution now (operational retry or external resume)."""
    if store.get_execution(execution_id) is None:
        raise HTTPException(status_code=404, detail=f"Execution not found: {execution_id}")
    try:
        return advance_workflow(execution_id)
    except Exception as e:
        logger.error(f"Advance of {execution_id} failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Advance failed: {e}")
