"""SHA claim workflow models: instances, their steps and the activity trail."""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import JSON, Boolean, Enum, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clinicsync.db.models.base import (
    Base,
    OptionalTimestampTZ,
    StepStatus,
    TimestampTZ,
    UUIDPrimaryKey,
    WorkflowAction,
    WorkflowStatus,
)

SHA_WORKFLOW_TYPE = "SHA_CLAIM_PROCESSING"


class WorkflowInstance(Base):
    """One run of the claim processing step graph for a claim."""

    __tablename__ = "sha_workflow_instances"

    workflow_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    claim_id: Mapped[str] = mapped_column(String(255), nullable=False)
    invoice_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    workflow_type: Mapped[str] = mapped_column(
        String(50), default=SHA_WORKFLOW_TYPE, nullable=False
    )
    current_step: Mapped[str | None] = mapped_column(String(100), nullable=True)
    overall_status: Mapped[WorkflowStatus] = mapped_column(
        Enum(WorkflowStatus, name="workflow_status", create_constraint=True),
        nullable=False,
        default=WorkflowStatus.NOT_STARTED,
    )
    initiated_by: Mapped[str] = mapped_column(String(255), nullable=False)
    completed_at: Mapped[OptionalTimestampTZ]

    steps: Mapped[list[WorkflowStep]] = relationship(
        "WorkflowStep",
        back_populates="workflow",
        cascade="all, delete-orphan",
        order_by="WorkflowStep.step_order",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_sha_workflow_instances_claim_id", "claim_id"),
        Index("ix_sha_workflow_instances_overall_status", "overall_status"),
        Index("ix_sha_workflow_instances_created_at", "created_at"),
    )

    def get_step(self, step_name: str) -> WorkflowStep | None:
        for step in self.steps:
            if step.step_name == step_name:
                return step
        return None


class WorkflowStep(Base):
    """A node of a workflow instance's step graph.

    prerequisites and next_steps are lists of step names within the same
    instance; a step may only start once every prerequisite is completed or
    skipped.
    """

    __tablename__ = "sha_workflow_steps"

    step_id: Mapped[UUIDPrimaryKey]
    workflow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sha_workflow_instances.workflow_id", ondelete="CASCADE"),
        nullable=False,
    )
    created_at: Mapped[TimestampTZ]

    step_name: Mapped[str] = mapped_column(String(100), nullable=False)
    step_order: Mapped[int] = mapped_column(nullable=False)
    status: Mapped[StepStatus] = mapped_column(
        Enum(StepStatus, name="workflow_step_status", create_constraint=True),
        nullable=False,
        default=StepStatus.PENDING,
    )
    required: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    automated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    estimated_duration_minutes: Mapped[int | None] = mapped_column(nullable=True)
    actual_duration_minutes: Mapped[int | None] = mapped_column(nullable=True)

    assigned_to: Mapped[str | None] = mapped_column(String(255), nullable=True)
    completed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    started_at: Mapped[OptionalTimestampTZ]
    completed_at: Mapped[OptionalTimestampTZ]
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    prerequisites: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    next_steps: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    workflow: Mapped[WorkflowInstance] = relationship(
        "WorkflowInstance",
        back_populates="steps",
    )

    __table_args__ = (
        Index("ix_sha_workflow_steps_workflow_id", "workflow_id"),
        Index("ix_sha_workflow_steps_assigned_to", "assigned_to"),
    )


class WorkflowActivity(Base):
    """Audit trail entry for a workflow mutation or rejected attempt."""

    __tablename__ = "sha_workflow_activity"

    activity_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    workflow_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    claim_id: Mapped[str] = mapped_column(String(255), nullable=False)
    step_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    action: Mapped[WorkflowAction] = mapped_column(
        Enum(WorkflowAction, name="workflow_action", create_constraint=True),
        nullable=False,
    )
    performed_by: Mapped[str] = mapped_column(String(255), nullable=False)
    outcome: Mapped[str] = mapped_column(String(50), default="success", nullable=False)
    details_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_sha_workflow_activity_workflow_id", "workflow_id"),
        Index("ix_sha_workflow_activity_claim_id", "claim_id"),
    )
