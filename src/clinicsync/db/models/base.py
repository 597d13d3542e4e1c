"""Base model definitions and common types.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Portable column types (UUID, timezone-aware timestamps) that run on
  PostgreSQL in production and SQLite in tests
- Enum types used across multiple models
"""

import enum
import uuid
from datetime import UTC, datetime
from typing import Annotated

from sqlalchemy import DateTime, MetaData, String, TypeDecorator, Uuid
from sqlalchemy.orm import DeclarativeBase, mapped_column

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp column.

    Values are normalized to UTC on write. Backends that drop the offset
    (SQLite) get UTC re-attached on read so comparisons never mix naive and
    aware datetimes.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


# UUID primary key generated client-side so it works on every backend
UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4),
]

TimestampTZ = Annotated[
    datetime,
    mapped_column(UTCDateTime(), default=utcnow, nullable=False),
]

OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(UTCDateTime(), nullable=True),
]

ShortString = Annotated[str, mapped_column(String(100))]
MediumString = Annotated[str, mapped_column(String(255))]


class Base(DeclarativeBase):
    """Declarative base for all clinicsync models."""

    metadata = metadata


# =============================================================================
# Common Enums
# =============================================================================


class PresenceStatus(enum.Enum):
    """Visibility status of a user.

    Values:
        ONLINE: Connected and active
        AWAY: Connected but idle
        BUSY: Connected, do not disturb
        OFFLINE: Disconnected or swept as stale
    """

    ONLINE = "online"
    AWAY = "away"
    BUSY = "busy"
    OFFLINE = "offline"


class NotificationType(enum.Enum):
    """Kind of notification, used by clients to pick an icon and route.

    Values:
        PATIENT_ASSIGNMENT: A patient was assigned to the recipient
        PRESCRIPTION_UPDATE: A prescription was created or changed
        LAB_RESULT: Lab results are available or changed
        PAYMENT_RECEIVED: A payment was recorded
        VISIT_UPDATE: A visit was scheduled or changed
        SYSTEM_ALERT: Operational or administrative alert
        SYNC_EVENT: Generic entity change
    """

    PATIENT_ASSIGNMENT = "patient_assignment"
    PRESCRIPTION_UPDATE = "prescription_update"
    LAB_RESULT = "lab_result"
    PAYMENT_RECEIVED = "payment_received"
    VISIT_UPDATE = "visit_update"
    SYSTEM_ALERT = "system_alert"
    SYNC_EVENT = "sync_event"


class NotificationPriority(enum.Enum):
    """Rendering hint for notifications; delivery ignores it.

    Values:
        LOW, MEDIUM, HIGH, URGENT
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class JobStatus(enum.Enum):
    """Status of a background job.

    Values:
        PENDING: Job is waiting to be processed (including retry backoff)
        RUNNING: Job is currently being executed
        COMPLETED: Job finished successfully
        FAILED: Job failed after max attempts (dead letter)
        CANCELLED: Job was manually cancelled before it started
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WorkflowStatus(enum.Enum):
    """Overall status of a workflow instance.

    Values:
        NOT_STARTED: Created, no step started yet
        IN_PROGRESS: At least one step started
        COMPLETED: Every required step completed or skipped (terminal)
        FAILED: An automated step failed (terminal)
        CANCELLED: Cancelled by an operator (terminal)
    """

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED)


class StepStatus(enum.Enum):
    """Status of a single workflow step.

    Values:
        PENDING, IN_PROGRESS, COMPLETED, SKIPPED, FAILED
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def satisfies_prerequisite(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.SKIPPED)


class WorkflowAction(enum.Enum):
    """Actions recorded in the workflow activity trail."""

    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_SKIPPED = "step_skipped"
    STEP_FAILED = "step_failed"
    STEP_REJECTED = "step_rejected"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_FAILED = "workflow_failed"
    WORKFLOW_CANCELLED = "workflow_cancelled"
