"""Notification queue handlers: email, SMS and payment reminders.

Every delivered message gets an audit entry in the job's transaction.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from clinicsync.services.audit import AuditEventType, AuditSeverity, record_audit

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from clinicsync.db.models.jobs import Job
    from clinicsync.worker.handlers import HandlerContext

logger = logging.getLogger(__name__)

DEFAULT_EMAIL_SUBJECT = "Clinic notification"


def _require(payload: dict[str, Any], *fields: str) -> None:
    missing = [name for name in fields if not payload.get(name)]
    if missing:
        msg = f"{', '.join(missing)} required in job payload"
        raise ValueError(msg)


async def send_email_handler(
    session: AsyncSession,
    job: Job,
    *,
    context: HandlerContext,
) -> dict[str, Any]:
    """Send an email.

    Expected job payload:
        recipient: Email address.
        message: Plain-text body.
        subject: Subject line (optional).
        metadata: Free-form context stored with the audit entry (optional).
    """
    payload = job.payload_json or {}
    _require(payload, "recipient", "message")
    recipient = payload["recipient"]
    message = payload["message"]
    metadata = payload.get("metadata") or {}

    receipt = await context.email.send(
        recipient, payload.get("subject") or DEFAULT_EMAIL_SUBJECT, message
    )
    await record_audit(
        session,
        event_type=AuditEventType.NOTIFICATION,
        action="send_notification",
        target_type="email",
        severity=AuditSeverity.LOW,
        details={
            "recipient": recipient,
            "message": message,
            "metadata": metadata,
            "message_id": receipt.message_id,
        },
    )
    return {"success": True, "recipient": recipient, "messageId": receipt.message_id}


async def send_sms_handler(
    session: AsyncSession,
    job: Job,
    *,
    context: HandlerContext,
) -> dict[str, Any]:
    """Send an SMS.

    Expected job payload:
        recipient: Phone number.
        message: Text to send.
        metadata: Free-form context stored with the audit entry (optional).
    """
    payload = job.payload_json or {}
    _require(payload, "recipient", "message")
    recipient = payload["recipient"]
    message = payload["message"]

    receipt = await context.sms.send(recipient, message)
    await record_audit(
        session,
        event_type=AuditEventType.NOTIFICATION,
        action="send_notification",
        target_type="sms",
        severity=AuditSeverity.LOW,
        details={
            "recipient": recipient,
            "message": message,
            "metadata": payload.get("metadata") or {},
            "message_id": receipt.message_id,
        },
    )
    return {"success": True, "recipient": recipient, "messageId": receipt.message_id}


async def send_overdue_reminder_handler(
    session: AsyncSession,
    job: Job,
    *,
    context: HandlerContext,
) -> dict[str, Any]:
    """Remind a patient about an overdue balance by SMS.

    Expected job payload:
        recipient: Patient phone number.
        message: Reminder text.
        metadata.receivable_id: Receivable whose last_reminder_sent is updated.
    """
    payload = job.payload_json or {}
    _require(payload, "recipient", "message")
    metadata = payload.get("metadata") or {}
    receivable_id = metadata.get("receivable_id")
    if not receivable_id:
        msg = "metadata.receivable_id is required in job payload"
        raise ValueError(msg)

    receipt = await context.sms.send(payload["recipient"], payload["message"])
    await context.records.mark_reminder_sent(session, receivable_id)
    await record_audit(
        session,
        event_type=AuditEventType.NOTIFICATION,
        action="send_overdue_reminder",
        target_type="accounts_receivable",
        target_id=str(receivable_id),
        severity=AuditSeverity.LOW,
        details={"recipient": payload["recipient"], "message_id": receipt.message_id},
    )
    logger.info("Overdue reminder sent: receivable_id=%s", receivable_id)
    return {"success": True, "receivableId": receivable_id, "messageId": receipt.message_id}
