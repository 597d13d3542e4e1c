"""Job handlers for the clinicsync worker.

Each handler processes one job type and has the signature
``handler(session, job, *, context) -> dict | None``; the worker binds the
context when registering it. Raising marks the job failed and lets the queue
retry it.

- claims: submit_single_claim, submit_claim_batch, reconcile_claims
- inventory: check_low_stock, check_expiring_items, generate_reorder_report
- notification: send_email, send_sms, send_overdue_reminder
- backup: database_backup, file_backup
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from clinicsync.worker.handlers.backup import database_backup_handler, file_backup_handler
from clinicsync.worker.handlers.claims import (
    reconcile_claims_handler,
    submit_claim_batch_handler,
    submit_single_claim_handler,
)
from clinicsync.worker.handlers.inventory import (
    check_expiring_items_handler,
    check_low_stock_handler,
    generate_reorder_report_handler,
)
from clinicsync.worker.handlers.notification import (
    send_email_handler,
    send_overdue_reminder_handler,
    send_sms_handler,
)

if TYPE_CHECKING:
    from clinicsync.core.config import Settings
    from clinicsync.services.clinic_records import ClinicRecords
    from clinicsync.services.messaging import EmailSender, SMSGateway
    from clinicsync.services.sha_client import SHAClient


@dataclass
class HandlerContext:
    """Collaborators shared by every handler in a worker process."""

    settings: Settings
    records: ClinicRecords
    sha_client: SHAClient
    email: EmailSender
    sms: SMSGateway


__all__ = [
    "HandlerContext",
    "check_expiring_items_handler",
    "check_low_stock_handler",
    "database_backup_handler",
    "file_backup_handler",
    "generate_reorder_report_handler",
    "reconcile_claims_handler",
    "send_email_handler",
    "send_overdue_reminder_handler",
    "send_sms_handler",
    "submit_claim_batch_handler",
    "submit_single_claim_handler",
]
