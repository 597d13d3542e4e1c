"""SQLAlchemy ORM models for clinicsync.

- base: Common metadata, portable column types and enums
- jobs: Database-backed job queue and repeatable registrations
- presence: Durable copy of user presence
- notifications: Per-recipient notification inbox
- audit: Audit log entries
- workflow: SHA claim workflow instances, steps and activity trail
"""

from clinicsync.db.models.audit import AuditLogEntry
from clinicsync.db.models.base import (
    Base,
    JobStatus,
    NotificationPriority,
    NotificationType,
    PresenceStatus,
    StepStatus,
    WorkflowAction,
    WorkflowStatus,
    metadata,
)
from clinicsync.db.models.jobs import Job, RepeatableJob
from clinicsync.db.models.notifications import Notification
from clinicsync.db.models.presence import UserPresence
from clinicsync.db.models.workflow import WorkflowActivity, WorkflowInstance, WorkflowStep

__all__ = [
    "AuditLogEntry",
    "Base",
    "Job",
    "JobStatus",
    "Notification",
    "NotificationPriority",
    "NotificationType",
    "PresenceStatus",
    "RepeatableJob",
    "StepStatus",
    "UserPresence",
    "WorkflowAction",
    "WorkflowActivity",
    "WorkflowInstance",
    "WorkflowStatus",
    "WorkflowStep",
    "metadata",
]
