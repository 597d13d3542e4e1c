"""Claims queue handlers: SHA submission and reconciliation.

Submissions are logged in claim_submission_logs before the SHA call is made,
and the log is committed with its outcome whether or not SHA accepts the
claim, so a failed attempt stays visible after the job is retried.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from clinicsync.services.sha_client import SHAClientError, build_claim_payload

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from clinicsync.db.models.jobs import Job
    from clinicsync.worker.handlers import HandlerContext

logger = logging.getLogger(__name__)

# SHA statuses that settle a submitted claim
DECIDED_STATUSES = frozenset({"approved", "rejected", "paid"})


async def submit_single_claim_handler(
    session: AsyncSession,
    job: Job,
    *,
    context: HandlerContext,
) -> dict[str, Any]:
    """Submit one claim to SHA.

    Expected job payload:
        claimId: Id of the claim to submit.

    Raises:
        ValueError: If claimId is missing.
        LookupError: If the claim does not exist.
        SHAClientError: If SHA rejects the submission or is unreachable.
    """
    payload = job.payload_json or {}
    claim_id = payload.get("claimId")
    if not claim_id:
        msg = "claimId is required in job payload"
        raise ValueError(msg)

    records = context.records
    claim = await records.get_claim(session, claim_id)
    if claim is None:
        msg = f"Claim not found: {claim_id}"
        raise LookupError(msg)
    items = await records.get_claim_items(session, claim_id)

    log_id = await records.log_submission(
        session,
        submission_type="single",
        claim_id=claim_id,
        request_payload=build_claim_payload(claim, items, context.sha_client.provider_code),
    )
    await session.commit()

    try:
        response = await context.sha_client.submit_single_claim(claim, items)
    except SHAClientError as e:
        await records.complete_submission_log(
            session, log_id, success=False, response_payload=e.body, error_message=str(e)
        )
        await session.commit()
        raise

    await records.complete_submission_log(session, log_id, success=True, response_payload=response.data)
    await records.mark_claim_submitted(session, claim_id, response.reference)

    logger.info("Claim submitted: claim_id=%s, sha_reference=%s", claim_id, response.reference)
    return {"success": True, "shaReference": response.reference}


async def submit_claim_batch_handler(
    session: AsyncSession,
    job: Job,
    *,
    context: HandlerContext,
) -> dict[str, Any]:
    """Submit every claim of a batch to SHA in one request.

    Expected job payload:
        batchId: Id of the claim batch.
    """
    payload = job.payload_json or {}
    batch_id = payload.get("batchId")
    if not batch_id:
        msg = "batchId is required in job payload"
        raise ValueError(msg)

    records = context.records
    batch = await records.get_batch(session, batch_id)
    if batch is None:
        msg = f"Batch not found: {batch_id}"
        raise LookupError(msg)

    claims = await records.get_batch_claims(session, batch_id)
    if not claims:
        msg = f"Batch {batch_id} contains no claims"
        raise ValueError(msg)
    claims_with_items = [
        (claim, await records.get_claim_items(session, claim["id"])) for claim in claims
    ]

    log_id = await records.log_submission(
        session,
        submission_type="batch",
        batch_id=batch_id,
        request_payload={
            "batch_number": batch["batch_number"],
            "claim_ids": [claim["id"] for claim in claims],
        },
    )
    await session.commit()

    try:
        response = await context.sha_client.submit_claim_batch(batch, claims_with_items)
    except SHAClientError as e:
        await records.complete_submission_log(
            session, log_id, success=False, response_payload=e.body, error_message=str(e)
        )
        await session.commit()
        raise

    await records.complete_submission_log(session, log_id, success=True, response_payload=response.data)
    await records.mark_batch_submitted(session, batch_id, response.batch_reference)

    logger.info(
        "Batch submitted: batch_id=%s, claims=%d, sha_batch_reference=%s",
        batch_id,
        len(claims),
        response.batch_reference,
    )
    return {"success": True, "shaBatchReference": response.batch_reference}


async def reconcile_claims_handler(
    session: AsyncSession,
    job: Job,
    *,
    context: HandlerContext,
) -> dict[str, Any]:
    """Pull SHA decisions for every submitted claim.

    A status lookup failing for one claim is logged and does not stop the
    others. Runs of this job may overlap; applying the same decision twice
    leaves the claim unchanged.
    """
    records = context.records
    claims = await records.list_submitted_claims(session)

    updated = 0
    errors = 0
    for claim in claims:
        try:
            response = await context.sha_client.check_claim_status(claim["sha_reference"])
        except SHAClientError as e:
            errors += 1
            logger.warning("Status check failed for claim %s: %s", claim["id"], e)
            continue

        status = response.status
        if status not in DECIDED_STATUSES:
            continue

        await records.update_claim_decision(
            session,
            claim["id"],
            status=status,
            approved_amount=response.data.get("approved_amount"),
            rejection_reason=response.data.get("rejection_reason"),
        )
        updated += 1

    logger.info(
        "Claims reconciliation finished: checked=%d, updated=%d, errors=%d",
        len(claims),
        updated,
        errors,
    )
    return {
        "success": True,
        "message": "Claims reconciliation completed",
        "checked": len(claims),
        "updated": updated,
        "errors": errors,
    }
