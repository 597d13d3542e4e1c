"""SHA claim workflow endpoints.

Workflow errors come back synchronously: unknown workflows are 404,
prerequisite and state violations are 409, and a failing automated step is
409 with the workflow left failed for diagnosis.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Body, Query, status

from clinicsync.api.dependencies import IdentityDep, ServicesDep
from clinicsync.api.schemas.workflows import (
    CompleteStepRequest,
    InitializeWorkflowRequest,
    ReasonRequest,
    WorkflowActivityResponse,
    WorkflowResponse,
)
from clinicsync.db.models import WorkflowStatus
from clinicsync.services.workflow import WorkflowFilters

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflows", tags=["workflows"])


@router.post("", response_model=WorkflowResponse, status_code=status.HTTP_201_CREATED)
async def initialize_workflow(
    request: InitializeWorkflowRequest,
    services: ServicesDep,
    identity: IdentityDep,
) -> WorkflowResponse:
    """Create a workflow for a claim and start its first step."""
    workflow = await services.workflows.initialize_sha_workflow(request.claim_id, identity.user_id)
    return WorkflowResponse.model_validate(workflow)


@router.get("", response_model=list[WorkflowResponse])
async def list_workflows(
    services: ServicesDep,
    _identity: IdentityDep,
    workflow_status: Annotated[WorkflowStatus | None, Query(alias="status")] = None,
    claim_id: Annotated[str | None, Query(alias="claimId")] = None,
    assigned_to: Annotated[str | None, Query(alias="assignedTo")] = None,
    date_from: Annotated[datetime | None, Query(alias="dateFrom")] = None,
    date_to: Annotated[datetime | None, Query(alias="dateTo")] = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> list[WorkflowResponse]:
    workflows = await services.workflows.get_workflows(
        WorkflowFilters(
            status=workflow_status,
            claim_id=claim_id,
            assigned_to=assigned_to,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
        )
    )
    return [WorkflowResponse.model_validate(w) for w in workflows]


@router.get("/statistics")
async def workflow_statistics(
    services: ServicesDep,
    _identity: IdentityDep,
    date_from: Annotated[datetime | None, Query(alias="dateFrom")] = None,
    date_to: Annotated[datetime | None, Query(alias="dateTo")] = None,
) -> dict[str, Any]:
    """Per-status and per-step counts with average durations."""
    return await services.workflows.get_workflow_statistics(date_from, date_to)


@router.get("/{workflow_id}", response_model=WorkflowResponse)
async def get_workflow(
    workflow_id: UUID, services: ServicesDep, _identity: IdentityDep
) -> WorkflowResponse:
    workflow = await services.workflows.get_workflow_instance(workflow_id)
    return WorkflowResponse.model_validate(workflow)


@router.get("/{workflow_id}/activity", response_model=list[WorkflowActivityResponse])
async def get_workflow_activity(
    workflow_id: UUID, services: ServicesDep, _identity: IdentityDep
) -> list[WorkflowActivityResponse]:
    await services.workflows.get_workflow_instance(workflow_id)
    activity = await services.workflows.get_activity(workflow_id)
    return [WorkflowActivityResponse.model_validate(a) for a in activity]


@router.post("/{workflow_id}/steps/{step_name}/complete", response_model=WorkflowResponse)
async def complete_step(
    workflow_id: UUID,
    step_name: str,
    services: ServicesDep,
    identity: IdentityDep,
    request: Annotated[CompleteStepRequest | None, Body()] = None,
) -> WorkflowResponse:
    workflow = await services.workflows.complete_workflow_step(
        workflow_id, step_name, identity.user_id, request.notes if request else None
    )
    return WorkflowResponse.model_validate(workflow)


@router.post("/{workflow_id}/steps/{step_name}/skip", response_model=WorkflowResponse)
async def skip_step(
    workflow_id: UUID,
    step_name: str,
    services: ServicesDep,
    identity: IdentityDep,
    request: Annotated[ReasonRequest | None, Body()] = None,
) -> WorkflowResponse:
    """Skip an optional step; required steps cannot be skipped."""
    workflow = await services.workflows.skip_workflow_step(
        workflow_id, step_name, identity.user_id, request.reason if request else None
    )
    return WorkflowResponse.model_validate(workflow)


@router.post("/{workflow_id}/process", response_model=WorkflowResponse)
async def process_automated_steps(
    workflow_id: UUID, services: ServicesDep, identity: IdentityDep
) -> WorkflowResponse:
    """Run every ready automated step in order until a manual step is next."""
    workflow = await services.workflows.process_automated_steps(workflow_id, identity.user_id)
    return WorkflowResponse.model_validate(workflow)


@router.post("/{workflow_id}/cancel", response_model=WorkflowResponse)
async def cancel_workflow(
    workflow_id: UUID,
    services: ServicesDep,
    identity: IdentityDep,
    request: Annotated[ReasonRequest | None, Body()] = None,
) -> WorkflowResponse:
    workflow = await services.workflows.cancel_workflow(
        workflow_id, identity.user_id, request.reason if request else None
    )
    logger.info("Workflow %s cancelled by %s", workflow_id, identity.user_id)
    return WorkflowResponse.model_validate(workflow)
