"""Gateway to clinic tables owned by the main application database.

Claims, claim items, claim batches, inventory, SHA document attachments,
invoices and receivables are created and migrated by the clinic application.
This module only reads and updates the columns the background jobs and the
workflow engine need, through parameterized SQL on the caller's session. The
caller owns the transaction.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import text

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Next payment check is scheduled one day after tracking starts
PAYMENT_CHECK_INTERVAL = timedelta(days=1)


def _rows(result: Any) -> list[dict[str, Any]]:
    return [dict(row) for row in result.mappings().all()]


class ClinicRecords:
    """Narrow SQL access to clinic tables used by jobs and workflows."""

    # -- claims --------------------------------------------------------------

    async def get_claim(self, session: AsyncSession, claim_id: str) -> dict[str, Any] | None:
        result = await session.execute(
            text("SELECT * FROM claims WHERE id = :claim_id"),
            {"claim_id": claim_id},
        )
        row = result.mappings().first()
        return dict(row) if row is not None else None

    async def get_claim_items(self, session: AsyncSession, claim_id: str) -> list[dict[str, Any]]:
        result = await session.execute(
            text("SELECT * FROM claim_items WHERE claim_id = :claim_id"),
            {"claim_id": claim_id},
        )
        return _rows(result)

    async def get_batch(self, session: AsyncSession, batch_id: str) -> dict[str, Any] | None:
        result = await session.execute(
            text("SELECT * FROM claim_batches WHERE id = :batch_id"),
            {"batch_id": batch_id},
        )
        row = result.mappings().first()
        return dict(row) if row is not None else None

    async def get_batch_claims(self, session: AsyncSession, batch_id: str) -> list[dict[str, Any]]:
        result = await session.execute(
            text("SELECT * FROM claims WHERE batch_id = :batch_id"),
            {"batch_id": batch_id},
        )
        return _rows(result)

    async def log_submission(
        self,
        session: AsyncSession,
        *,
        submission_type: str,
        request_payload: dict[str, Any],
        claim_id: str | None = None,
        batch_id: str | None = None,
    ) -> str:
        """Record an outgoing SHA submission. Returns the log id."""
        log_id = str(uuid.uuid4())
        now = datetime.now(UTC)
        await session.execute(
            text(
                "INSERT INTO claim_submission_logs "
                "(id, claim_id, batch_id, submission_type, request_payload, status, "
                "created_at, updated_at) "
                "VALUES (:id, :claim_id, :batch_id, :submission_type, :request_payload, "
                "'pending', :now, :now)"
            ),
            {
                "id": log_id,
                "claim_id": claim_id,
                "batch_id": batch_id,
                "submission_type": submission_type,
                "request_payload": json.dumps(request_payload, default=str),
                "now": now,
            },
        )
        return log_id

    async def complete_submission_log(
        self,
        session: AsyncSession,
        log_id: str,
        *,
        success: bool,
        response_payload: Any = None,
        error_message: str | None = None,
    ) -> None:
        await session.execute(
            text(
                "UPDATE claim_submission_logs "
                "SET response_payload = :response_payload, status = :status, "
                "error_message = :error_message, updated_at = :now "
                "WHERE id = :id"
            ),
            {
                "id": log_id,
                "response_payload": json.dumps(response_payload, default=str),
                "status": "success" if success else "failed",
                "error_message": error_message,
                "now": datetime.now(UTC),
            },
        )

    async def mark_claim_submitted(
        self, session: AsyncSession, claim_id: str, sha_reference: str | None
    ) -> None:
        now = datetime.now(UTC)
        await session.execute(
            text(
                "UPDATE claims SET status = 'submitted', submission_date = :now, "
                "sha_reference = :sha_reference, updated_at = :now WHERE id = :claim_id"
            ),
            {"claim_id": claim_id, "sha_reference": sha_reference, "now": now},
        )

    async def mark_batch_submitted(
        self, session: AsyncSession, batch_id: str, sha_batch_reference: str | None
    ) -> None:
        now = datetime.now(UTC)
        await session.execute(
            text(
                "UPDATE claim_batches SET status = 'submitted', submission_date = :now, "
                "sha_batch_reference = :reference, updated_at = :now WHERE id = :batch_id"
            ),
            {"batch_id": batch_id, "reference": sha_batch_reference, "now": now},
        )
        await session.execute(
            text(
                "UPDATE claims SET status = 'submitted', submission_date = :now, "
                "updated_at = :now WHERE batch_id = :batch_id"
            ),
            {"batch_id": batch_id, "now": now},
        )

    async def list_submitted_claims(self, session: AsyncSession) -> list[dict[str, Any]]:
        """Claims awaiting an SHA decision."""
        result = await session.execute(
            text(
                "SELECT * FROM claims WHERE status = 'submitted' AND sha_reference IS NOT NULL"
            )
        )
        return _rows(result)

    async def update_claim_decision(
        self,
        session: AsyncSession,
        claim_id: str,
        *,
        status: str,
        approved_amount: Any = None,
        rejection_reason: str | None = None,
    ) -> None:
        """Apply an SHA decision (approved, rejected or paid) to a claim."""
        now = datetime.now(UTC)
        await session.execute(
            text(
                "UPDATE claims SET status = :status, "
                "approved_amount = COALESCE(:approved_amount, approved_amount), "
                "approval_date = CASE WHEN :status IN ('approved', 'paid') "
                "THEN :now ELSE approval_date END, "
                "rejection_reason = COALESCE(:rejection_reason, rejection_reason), "
                "updated_at = :now WHERE id = :claim_id"
            ),
            {
                "claim_id": claim_id,
                "status": status,
                "approved_amount": approved_amount,
                "rejection_reason": rejection_reason,
                "now": now,
            },
        )

    # -- workflow collaborators ---------------------------------------------

    async def count_required_documents(
        self, session: AsyncSession, claim_id: str
    ) -> tuple[int, int]:
        """Return (required, verified) document counts for a claim."""
        result = await session.execute(
            text(
                "SELECT COUNT(*) AS required_docs, "
                "COUNT(CASE WHEN compliance_verified THEN 1 END) AS verified_docs "
                "FROM sha_document_attachments "
                "WHERE claim_id = :claim_id AND is_required = true"
            ),
            {"claim_id": claim_id},
        )
        row = result.mappings().one()
        return int(row["required_docs"] or 0), int(row["verified_docs"] or 0)

    async def mark_claim_compliant(self, session: AsyncSession, claim_id: str) -> None:
        await session.execute(
            text(
                "UPDATE sha_claims SET compliance_status = 'verified', "
                "last_reviewed_at = :now WHERE id = :claim_id"
            ),
            {"claim_id": claim_id, "now": datetime.now(UTC)},
        )

    async def create_invoice_for_claim(
        self, session: AsyncSession, claim_id: str, generated_by: str
    ) -> str:
        """Create the SHA invoice for a claim from its claimed amount.

        Returns:
            The new invoice id.

        Raises:
            LookupError: If the claim does not exist.
        """
        result = await session.execute(
            text("SELECT claim_number, claim_amount FROM sha_claims WHERE id = :claim_id"),
            {"claim_id": claim_id},
        )
        claim = result.mappings().first()
        if claim is None:
            raise LookupError(f"Claim {claim_id} not found")

        invoice_id = str(uuid.uuid4())
        now = datetime.now(UTC)
        await session.execute(
            text(
                "INSERT INTO sha_invoices "
                "(id, claim_id, invoice_number, invoice_date, amount, status, "
                "generated_by, created_at, updated_at) "
                "VALUES (:id, :claim_id, :invoice_number, :now, :amount, 'generated', "
                ":generated_by, :now, :now)"
            ),
            {
                "id": invoice_id,
                "claim_id": claim_id,
                "invoice_number": f"SHA-INV-{claim['claim_number']}",
                "amount": claim["claim_amount"],
                "generated_by": generated_by,
                "now": now,
            },
        )
        logger.info("Generated SHA invoice %s for claim %s", invoice_id, claim_id)
        return invoice_id

    async def start_payment_tracking(
        self, session: AsyncSession, claim_id: str, invoice_id: str | None
    ) -> str:
        tracking_id = str(uuid.uuid4())
        now = datetime.now(UTC)
        await session.execute(
            text(
                "INSERT INTO sha_payment_tracking "
                "(id, claim_id, invoice_id, tracking_started_at, auto_check_enabled, "
                "next_check_at, created_at) "
                "VALUES (:id, :claim_id, :invoice_id, :now, true, :next_check_at, :now)"
            ),
            {
                "id": tracking_id,
                "claim_id": claim_id,
                "invoice_id": invoice_id,
                "next_check_at": now + PAYMENT_CHECK_INTERVAL,
                "now": now,
            },
        )
        return tracking_id

    # -- inventory -----------------------------------------------------------

    async def low_stock_items(self, session: AsyncSession) -> list[dict[str, Any]]:
        """Items whose unexpired stock is at or below their reorder level."""
        result = await session.execute(
            text(
                "SELECT ii.id, ii.name, ii.reorder_level, "
                "COALESCE(SUM(ib.quantity), 0) AS current_stock "
                "FROM inventory_items ii "
                "LEFT JOIN inventory_batches ib "
                "ON ii.id = ib.item_id AND ib.expiry_date > :now "
                "GROUP BY ii.id, ii.name, ii.reorder_level "
                "HAVING COALESCE(SUM(ib.quantity), 0) <= ii.reorder_level"
            ),
            {"now": datetime.now(UTC)},
        )
        return _rows(result)

    async def expiring_batches(self, session: AsyncSession, days_ahead: int) -> list[dict[str, Any]]:
        now = datetime.now(UTC)
        result = await session.execute(
            text(
                "SELECT ib.id, ib.item_id, ib.batch_number, ib.quantity, ib.expiry_date, ii.name "
                "FROM inventory_batches ib "
                "JOIN inventory_items ii ON ib.item_id = ii.id "
                "WHERE ib.expiry_date <= :horizon AND ib.expiry_date > :now "
                "AND ib.quantity > 0 "
                "ORDER BY ib.expiry_date ASC"
            ),
            {"now": now, "horizon": now + timedelta(days=days_ahead)},
        )
        return _rows(result)

    # -- receivables ---------------------------------------------------------

    async def mark_reminder_sent(self, session: AsyncSession, receivable_id: str) -> None:
        now = datetime.now(UTC)
        await session.execute(
            text(
                "UPDATE accounts_receivable SET last_reminder_sent = :now, updated_at = :now "
                "WHERE id = :receivable_id"
            ),
            {"receivable_id": receivable_id, "now": now},
        )
