"""Schemas for the SHA claim workflow endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from clinicsync.db.models import StepStatus, WorkflowAction, WorkflowStatus


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class InitializeWorkflowRequest(_CamelModel):
    claim_id: str = Field(..., min_length=1, description="Claim the workflow drives")


class CompleteStepRequest(_CamelModel):
    notes: str | None = Field(None, max_length=2000)


class ReasonRequest(_CamelModel):
    reason: str | None = Field(None, max_length=2000)


class WorkflowStepResponse(_CamelModel):
    """One step of a workflow instance."""

    step_id: UUID
    step_name: str
    step_order: int
    status: StepStatus
    required: bool
    automated: bool
    prerequisites: list[str]
    next_steps: list[str]
    estimated_duration_minutes: int | None = None
    actual_duration_minutes: int | None = None
    assigned_to: str | None = None
    completed_by: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    notes: str | None = None
    error_message: str | None = None


class WorkflowResponse(_CamelModel):
    """A workflow instance with its steps in order."""

    workflow_id: UUID
    claim_id: str
    invoice_id: str | None = None
    workflow_type: str
    current_step: str | None = None
    overall_status: WorkflowStatus
    initiated_by: str
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    steps: list[WorkflowStepResponse]


class WorkflowActivityResponse(_CamelModel):
    activity_id: UUID
    step_name: str | None = None
    action: WorkflowAction
    performed_by: str
    outcome: str
    details: dict[str, Any] | None = Field(None, validation_alias="details_json")
    created_at: datetime
