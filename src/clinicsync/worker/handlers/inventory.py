"""Inventory queue handlers: stock and expiry alerts.

Alerts are not sent inline; each handler enqueues send_email jobs on the
notifications queue in the same transaction, so an alert exists only if the
check that produced it committed.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from clinicsync.services.job_queue import JobQueueService, JobType, QueueName

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from clinicsync.db.models.jobs import Job
    from clinicsync.worker.handlers import HandlerContext

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY_WINDOW_DAYS = 30


async def _enqueue_email(
    session: AsyncSession,
    recipient: str,
    subject: str,
    message: str,
    metadata: dict[str, Any],
) -> None:
    await JobQueueService(session).enqueue(
        JobType.SEND_EMAIL,
        {"recipient": recipient, "subject": subject, "message": message, "metadata": metadata},
        queue=QueueName.NOTIFICATIONS,
    )


async def check_low_stock_handler(
    session: AsyncSession,
    job: Job,
    *,
    context: HandlerContext,
) -> dict[str, Any]:
    """Alert the administrator about every item at or below its reorder level."""
    items = await context.records.low_stock_items(session)
    admin_email = context.settings.messaging.admin_email

    for item in items:
        await _enqueue_email(
            session,
            admin_email,
            "Low stock alert",
            f"Low stock alert: {item['name']} "
            f"(Current: {item['current_stock']}, Reorder Level: {item['reorder_level']})",
            {"item_id": str(item["id"]), "alert_type": "low_stock"},
        )

    if items:
        logger.info("Low stock alerts queued for %d items", len(items))
    return {"success": True, "lowStockCount": len(items)}


async def check_expiring_items_handler(
    session: AsyncSession,
    job: Job,
    *,
    context: HandlerContext,
) -> dict[str, Any]:
    """Send one summary email listing stock batches close to expiry.

    Expected job payload:
        days_ahead: Expiry window in days (default: 30).
    """
    payload = job.payload_json or {}
    days_ahead = int(payload.get("days_ahead", DEFAULT_EXPIRY_WINDOW_DAYS))
    if days_ahead < 1:
        msg = f"days_ahead must be positive, got {days_ahead}"
        raise ValueError(msg)

    batches = await context.records.expiring_batches(session, days_ahead)
    if batches:
        await _enqueue_email(
            session,
            context.settings.messaging.admin_email,
            "Expiring stock alert",
            f"{len(batches)} items expiring within {days_ahead} days",
            {
                "alert_type": "expiring_items",
                "items": [
                    {
                        "batch_id": str(batch["id"]),
                        "name": batch["name"],
                        "quantity": batch["quantity"],
                        "expiry_date": str(batch["expiry_date"]),
                    }
                    for batch in batches
                ],
            },
        )
        logger.info("Expiry alert queued for %d batches", len(batches))

    return {"success": True, "expiringCount": len(batches)}


async def generate_reorder_report_handler(
    session: AsyncSession,
    job: Job,
    *,
    context: HandlerContext,
) -> dict[str, Any]:
    """Email a reorder list with a suggested quantity per low-stock item.

    The suggestion tops each item up to twice its reorder level.
    """
    items = await context.records.low_stock_items(session)
    lines = []
    for item in items:
        suggested = max(int(item["reorder_level"]) * 2 - int(item["current_stock"]), 0)
        lines.append(
            {
                "item_id": str(item["id"]),
                "name": item["name"],
                "current_stock": item["current_stock"],
                "reorder_level": item["reorder_level"],
                "suggested_quantity": suggested,
            }
        )

    if lines:
        body = "\n".join(
            f"- {line['name']}: order {line['suggested_quantity']} "
            f"(current {line['current_stock']}, reorder level {line['reorder_level']})"
            for line in lines
        )
        await _enqueue_email(
            session,
            context.settings.messaging.admin_email,
            "Inventory reorder list",
            f"{len(lines)} items need reordering:\n{body}",
            {"alert_type": "reorder_report", "items": lines},
        )

    return {"success": True, "itemCount": len(lines), "items": lines}
