"""Executors for the automated SHA workflow steps.

Each executor runs inside the workflow engine's transaction for that step and
raises to fail the step.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from clinicsync.db.models import WorkflowInstance
    from clinicsync.services.clinic_records import ClinicRecords
    from clinicsync.services.workflow import StepExecutor

logger = logging.getLogger(__name__)


class ComplianceCheckError(Exception):
    """Raised when a claim's required documents are missing or unverified."""


class SHAWorkflowExecutors:
    """Automated step implementations backed by the clinic records gateway."""

    def __init__(self, records: ClinicRecords) -> None:
        self._records = records

    async def compliance_verification(
        self, session: AsyncSession, workflow: WorkflowInstance
    ) -> None:
        """Require every mandatory document to be attached and verified."""
        required, verified = await self._records.count_required_documents(
            session, workflow.claim_id
        )
        if required == 0 or verified < required:
            raise ComplianceCheckError(
                "Not all required documents are uploaded and verified "
                f"({verified}/{required})"
            )
        await self._records.mark_claim_compliant(session, workflow.claim_id)

    async def invoice_generation(self, session: AsyncSession, workflow: WorkflowInstance) -> None:
        workflow.invoice_id = await self._records.create_invoice_for_claim(
            session, workflow.claim_id, "system"
        )

    async def payment_tracking(self, session: AsyncSession, workflow: WorkflowInstance) -> None:
        tracking_id = await self._records.start_payment_tracking(
            session, workflow.claim_id, workflow.invoice_id
        )
        logger.info(
            "Payment tracking started: claim_id=%s, tracking_id=%s",
            workflow.claim_id,
            tracking_id,
        )

    def as_mapping(self) -> dict[str, StepExecutor]:
        return {
            "compliance_verification": self.compliance_verification,
            "invoice_generation": self.invoice_generation,
            "payment_tracking": self.payment_tracking,
        }
