"""clinicsync service layer.

This package contains the business logic and external integrations:
- SyncService: presence, typing indicators and entity sync fan-out
- NotificationDispatcher: targeted, stored and pushed notifications
- JobQueueService: PostgreSQL-backed background job processing
- SHAWorkflowService: SHA claim step-graph engine
- SHAClient: SHA claims API client
- AuditLogService: audit trail for sync events, jobs and backups
"""

from clinicsync.services.audit import AuditEventType, AuditLogService, AuditSeverity
from clinicsync.services.auth import Identity, JWTTokenVerifier, TokenVerifier
from clinicsync.services.job_queue import (
    JobOptions,
    JobQueueError,
    JobQueueService,
    JobType,
    QueueName,
    RepeatOptions,
)
from clinicsync.services.notifications import NotificationDispatcher
from clinicsync.services.sha_client import SHAClient, SHAClientError
from clinicsync.services.sync_service import SyncService
from clinicsync.services.workflow import SHAWorkflowService, WorkflowFilters
from clinicsync.services.workflow_graph import FULL_GRAPH, STANDARD_GRAPH, WorkflowGraph

__all__ = [
    "FULL_GRAPH",
    "STANDARD_GRAPH",
    "AuditEventType",
    "AuditLogService",
    "AuditSeverity",
    "Identity",
    "JWTTokenVerifier",
    "JobOptions",
    "JobQueueError",
    "JobQueueService",
    "JobType",
    "NotificationDispatcher",
    "QueueName",
    "RepeatOptions",
    "SHAClient",
    "SHAClientError",
    "SHAWorkflowService",
    "SyncService",
    "TokenVerifier",
    "WorkflowFilters",
    "WorkflowGraph",
]
