"""Domain error taxonomy shared by the sync layer, the job queues and the workflow engine.

Connection-level errors terminate only the offending socket, workflow errors are
returned synchronously to the caller, and queue-job errors are retried by the
worker until they land in the failed-job list.
"""

from __future__ import annotations

from typing import Any


class ClinicSyncError(Exception):
    """Base exception for all clinicsync domain errors."""

    def __init__(self, message: str, detail: dict[str, Any] | None = None) -> None:
        self.message = message
        self.detail = detail or {}
        super().__init__(message)


class AuthenticationError(ClinicSyncError):
    """Raised when a connection presents a missing, invalid or expired token."""


class ValidationError(ClinicSyncError):
    """Raised when an event or notification payload is malformed.

    The payload is rejected before anything is broadcast.
    """


class BrokerUnavailable(ClinicSyncError):
    """Raised when the pub/sub transport or the durable store cannot be reached.

    Sync and notification failures are fire-and-forget relative to the domain
    write that triggered them; callers decide whether to surface them.
    """


class WorkflowError(ClinicSyncError):
    """Base exception for workflow engine errors."""


class WorkflowNotFoundError(WorkflowError):
    """Raised when a workflow instance does not exist."""

    def __init__(self, workflow_id: Any) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow instance {workflow_id} not found")


class WorkflowDefinitionError(WorkflowError):
    """Raised when a step graph references unknown steps or contains a cycle."""


class WorkflowStateError(WorkflowError):
    """Raised when a mutation targets a workflow in a terminal state."""


class InvalidStepError(WorkflowError):
    """Raised when a step does not exist or cannot be acted on in its current status."""

    def __init__(self, step_name: str, reason: str) -> None:
        self.step_name = step_name
        self.reason = reason
        super().__init__(f"Invalid step {step_name}: {reason}", {"step_name": step_name})


class PrerequisiteNotMetError(WorkflowError):
    """Raised when a step's prerequisites are not all completed or skipped."""

    def __init__(self, step_name: str, unmet: list[str]) -> None:
        self.step_name = step_name
        self.unmet = unmet
        super().__init__(
            f"Step {step_name} has unmet prerequisites: {', '.join(unmet)}",
            {"step_name": step_name, "unmet_prerequisites": unmet},
        )


class ExecutorFailure(WorkflowError):
    """Raised when an automated step executor fails.

    The step and the workflow are left in the failed state for diagnosis.
    """

    def __init__(self, step_name: str, cause: BaseException) -> None:
        self.step_name = step_name
        self.cause = cause
        super().__init__(
            f"Automated step {step_name} failed: {cause}",
            {"step_name": step_name, "error": str(cause)},
        )
