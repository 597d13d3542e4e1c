"""Tests for the worker job handlers.

Clinic records and external services are mocked; the job queue and audit
writes go to the test database.
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import select

from clinicsync.core.config import BackupSettings
from clinicsync.db.models import AuditLogEntry
from clinicsync.db.models.jobs import Job
from clinicsync.services.clinic_records import ClinicRecords
from clinicsync.services.messaging import DeliveryReceipt, SMSDeliveryError
from clinicsync.services.sha_client import SHAClientError, SHAResponse
from clinicsync.worker.handlers import (
    HandlerContext,
    check_expiring_items_handler,
    check_low_stock_handler,
    database_backup_handler,
    file_backup_handler,
    generate_reorder_report_handler,
    reconcile_claims_handler,
    send_email_handler,
    send_overdue_reminder_handler,
    send_sms_handler,
    submit_claim_batch_handler,
    submit_single_claim_handler,
)
from clinicsync.worker.handlers.backup import BackupError, backup_timestamp, dump_url


def _job(payload: dict | None = None) -> MagicMock:
    job = MagicMock(spec=Job)
    job.payload_json = payload
    return job


@pytest.fixture
def records() -> AsyncMock:
    return AsyncMock(spec=ClinicRecords)


@pytest.fixture
def sha_client() -> AsyncMock:
    client = AsyncMock()
    client.provider_code = "FAC01"
    return client


@pytest.fixture
def context(settings, records, sha_client, tmp_path) -> HandlerContext:
    backup = BackupSettings(
        directory=str(tmp_path / "backups"),
        dump_command="pg_dump",
        database_url="postgresql+psycopg://clinic:pw@db/clinic",
        file_source_directory=str(tmp_path / "uploads"),
        timeout_seconds=5,
    )
    email = AsyncMock()
    email.send.return_value = DeliveryReceipt("email", "admin@clinic.test", "<m1@clinic.test>")
    sms = AsyncMock()
    sms.send.return_value = DeliveryReceipt("sms", "+254700000001", "sms-1")
    return HandlerContext(
        settings=settings.model_copy(update={"backup": backup}),
        records=records,
        sha_client=sha_client,
        email=email,
        sms=sms,
    )


async def _audit_entries(session) -> list[AuditLogEntry]:
    return list((await session.execute(select(AuditLogEntry))).scalars().all())


async def _queued_jobs(session) -> list[Job]:
    return list((await session.execute(select(Job))).scalars().all())


CLAIM = {"id": "c1", "claim_number": "CLM-001", "claim_amount": 1500}


class TestSubmitSingleClaim:
    """Tests for single claim submission."""

    @pytest.mark.asyncio
    async def test_success(self, context, records, sha_client):
        session = AsyncMock()
        records.get_claim.return_value = CLAIM
        records.get_claim_items.return_value = []
        records.log_submission.return_value = "log-1"
        sha_client.submit_single_claim.return_value = SHAResponse(200, {"reference": "SHA-1"})

        result = await submit_single_claim_handler(
            session, _job({"claimId": "c1"}), context=context
        )

        assert result == {"success": True, "shaReference": "SHA-1"}
        records.complete_submission_log.assert_awaited_once_with(
            session, "log-1", success=True, response_payload={"reference": "SHA-1"}
        )
        records.mark_claim_submitted.assert_awaited_once_with(session, "c1", "SHA-1")

    @pytest.mark.asyncio
    async def test_rejection_is_logged_then_raised(self, context, records, sha_client):
        session = AsyncMock()
        records.get_claim.return_value = CLAIM
        records.get_claim_items.return_value = []
        records.log_submission.return_value = "log-1"
        sha_client.submit_single_claim.side_effect = SHAClientError(
            "SHA API returned 422", status_code=422, body={"error": "bad member"}
        )

        with pytest.raises(SHAClientError):
            await submit_single_claim_handler(session, _job({"claimId": "c1"}), context=context)

        records.complete_submission_log.assert_awaited_once()
        kwargs = records.complete_submission_log.call_args.kwargs
        assert kwargs["success"] is False
        assert kwargs["response_payload"] == {"error": "bad member"}
        records.mark_claim_submitted.assert_not_awaited()
        # Log committed before the call and again with its outcome
        assert session.commit.await_count == 2

    @pytest.mark.asyncio
    async def test_missing_claim_id(self, context):
        with pytest.raises(ValueError, match="claimId"):
            await submit_single_claim_handler(AsyncMock(), _job({}), context=context)

    @pytest.mark.asyncio
    async def test_unknown_claim(self, context, records):
        records.get_claim.return_value = None

        with pytest.raises(LookupError):
            await submit_single_claim_handler(AsyncMock(), _job({"claimId": "x"}), context=context)


class TestSubmitBatch:
    """Tests for batch submission."""

    @pytest.mark.asyncio
    async def test_success(self, context, records, sha_client):
        session = AsyncMock()
        batch = {"id": "b1", "batch_number": "BATCH-1"}
        records.get_batch.return_value = batch
        records.get_batch_claims.return_value = [CLAIM, {**CLAIM, "id": "c2"}]
        records.get_claim_items.return_value = []
        records.log_submission.return_value = "log-2"
        sha_client.submit_claim_batch.return_value = SHAResponse(200, {"batch_reference": "B-9"})

        result = await submit_claim_batch_handler(session, _job({"batchId": "b1"}), context=context)

        assert result == {"success": True, "shaBatchReference": "B-9"}
        assert records.log_submission.call_args.kwargs["request_payload"]["claim_ids"] == [
            "c1",
            "c2",
        ]
        records.mark_batch_submitted.assert_awaited_once_with(session, "b1", "B-9")

    @pytest.mark.asyncio
    async def test_empty_batch_rejected(self, context, records):
        records.get_batch.return_value = {"id": "b1", "batch_number": "BATCH-1"}
        records.get_batch_claims.return_value = []

        with pytest.raises(ValueError, match="no claims"):
            await submit_claim_batch_handler(AsyncMock(), _job({"batchId": "b1"}), context=context)


class TestReconcileClaims:
    """Tests for claim status reconciliation."""

    @pytest.mark.asyncio
    async def test_counts_updates_and_errors(self, context, records, sha_client):
        records.list_submitted_claims.return_value = [
            {"id": "c1", "sha_reference": "R1"},
            {"id": "c2", "sha_reference": "R2"},
            {"id": "c3", "sha_reference": "R3"},
        ]
        sha_client.check_claim_status.side_effect = [
            SHAResponse(200, {"status": "approved", "approved_amount": 1200}),
            SHAResponse(200, {"status": "processing"}),
            SHAClientError("SHA API returned 500", status_code=500),
        ]

        result = await reconcile_claims_handler(AsyncMock(), _job(), context=context)

        assert result["checked"] == 3
        assert result["updated"] == 1
        assert result["errors"] == 1
        records.update_claim_decision.assert_awaited_once()
        assert records.update_claim_decision.call_args.kwargs["approved_amount"] == 1200


class TestInventoryHandlers:
    """Tests for inventory alerts queued as email jobs."""

    @pytest.mark.asyncio
    async def test_low_stock_queues_one_email_per_item(self, session, context, records):
        records.low_stock_items.return_value = [
            {"id": 1, "name": "Paracetamol", "current_stock": 4, "reorder_level": 10},
            {"id": 2, "name": "Gloves", "current_stock": 0, "reorder_level": 50},
        ]

        result = await check_low_stock_handler(session, _job(), context=context)

        assert result == {"success": True, "lowStockCount": 2}
        jobs = await _queued_jobs(session)
        assert {j.job_type for j in jobs} == {"send_email"}
        assert {j.queue for j in jobs} == {"notifications"}
        recipients = {j.payload_json["recipient"] for j in jobs}
        assert recipients == {context.settings.messaging.admin_email}

    @pytest.mark.asyncio
    async def test_expiring_items_single_summary(self, session, context, records):
        records.expiring_batches.return_value = [
            {"id": 7, "name": "Insulin", "quantity": 12, "expiry_date": "2024-04-01"},
        ]

        result = await check_expiring_items_handler(session, _job({"days_ahead": 14}), context=context)

        assert result == {"success": True, "expiringCount": 1}
        records.expiring_batches.assert_awaited_once_with(session, 14)
        [job] = await _queued_jobs(session)
        assert job.payload_json["message"] == "1 items expiring within 14 days"

    @pytest.mark.asyncio
    async def test_expiring_items_rejects_non_positive_window(self, session, context):
        with pytest.raises(ValueError, match="positive"):
            await check_expiring_items_handler(session, _job({"days_ahead": 0}), context=context)

    @pytest.mark.asyncio
    async def test_nothing_low_queues_nothing(self, session, context, records):
        records.low_stock_items.return_value = []

        await check_low_stock_handler(session, _job(), context=context)

        assert await _queued_jobs(session) == []

    @pytest.mark.asyncio
    async def test_reorder_report_suggestions(self, session, context, records):
        records.low_stock_items.return_value = [
            {"id": 1, "name": "Paracetamol", "current_stock": 4, "reorder_level": 10},
        ]

        result = await generate_reorder_report_handler(session, _job(), context=context)

        assert result["items"][0]["suggested_quantity"] == 16


class TestNotificationHandlers:
    """Tests for email and SMS delivery jobs."""

    @pytest.mark.asyncio
    async def test_send_email_audited(self, session, context):
        result = await send_email_handler(
            session,
            _job({"recipient": "admin@clinic.test", "message": "Low stock", "subject": "Alert"}),
            context=context,
        )

        context.email.send.assert_awaited_once_with("admin@clinic.test", "Alert", "Low stock")
        assert result["messageId"] == "<m1@clinic.test>"
        [entry] = await _audit_entries(session)
        assert entry.event_type == "NOTIFICATION"
        assert entry.target_type == "email"

    @pytest.mark.asyncio
    async def test_send_sms_missing_fields(self, session, context):
        with pytest.raises(ValueError, match="message"):
            await send_sms_handler(session, _job({"recipient": "+1"}), context=context)

    @pytest.mark.asyncio
    async def test_send_sms_failure_propagates(self, session, context):
        context.sms.send.side_effect = SMSDeliveryError("SMS gateway returned 503")

        with pytest.raises(SMSDeliveryError):
            await send_sms_handler(
                session, _job({"recipient": "+1", "message": "hi"}), context=context
            )

        assert await _audit_entries(session) == []

    @pytest.mark.asyncio
    async def test_overdue_reminder_marks_receivable(self, session, context, records):
        result = await send_overdue_reminder_handler(
            session,
            _job(
                {
                    "recipient": "+254700000001",
                    "message": "Balance overdue",
                    "metadata": {"receivable_id": "ar-5"},
                }
            ),
            context=context,
        )

        records.mark_reminder_sent.assert_awaited_once_with(session, "ar-5")
        assert result["receivableId"] == "ar-5"
        [entry] = await _audit_entries(session)
        assert entry.action == "send_overdue_reminder"
        assert entry.target_id == "ar-5"


class _FakeProcess:
    def __init__(self, returncode: int, stderr: bytes = b"") -> None:
        self.returncode = returncode
        self._stderr = stderr

    async def communicate(self):
        return b"", self._stderr

    def kill(self) -> None:
        pass

    async def wait(self) -> int:
        return self.returncode


def _fake_dump(returncode: int = 0, content: bytes = b"-- dump\n", stderr: bytes = b""):
    calls = []

    async def create_subprocess_exec(*args, **kwargs):
        calls.append(args)
        target = next(a for a in args if a.startswith("--file=")).removeprefix("--file=")
        Path(target).write_bytes(content)
        return _FakeProcess(returncode, stderr)

    return create_subprocess_exec, calls


class TestBackupHandlers:
    """Tests for database and file backups."""

    def test_helpers(self):
        assert dump_url("postgresql+psycopg://u:p@h/db") == "postgresql://u:p@h/db"
        assert ":" not in backup_timestamp()

    @pytest.mark.asyncio
    async def test_database_backup(self, session, context):
        fake, calls = _fake_dump()

        with patch("clinicsync.worker.handlers.backup.asyncio.create_subprocess_exec", fake):
            result = await database_backup_handler(session, _job({}), context=context)

        assert calls[0][0] == "pg_dump"
        assert calls[0][1] == "--dbname=postgresql://clinic:pw@db/clinic"
        backup_dir = Path(context.settings.backup.directory)
        assert (backup_dir / result["backupFile"]).is_file()
        [entry] = await _audit_entries(session)
        assert entry.action == "database_backup"
        assert entry.details_json["size_bytes"] > 0

    @pytest.mark.asyncio
    async def test_failed_dump_discards_partial_file(self, session, context):
        fake, _ = _fake_dump(returncode=1, content=b"-- partial", stderr=b"connection refused")

        with (
            patch("clinicsync.worker.handlers.backup.asyncio.create_subprocess_exec", fake),
            pytest.raises(BackupError, match="connection refused"),
        ):
            await database_backup_handler(session, _job({}), context=context)

        assert list(Path(context.settings.backup.directory).iterdir()) == []
        assert await _audit_entries(session) == []

    @pytest.mark.asyncio
    async def test_empty_dump_rejected(self, session, context):
        fake, _ = _fake_dump(content=b"")

        with (
            patch("clinicsync.worker.handlers.backup.asyncio.create_subprocess_exec", fake),
            pytest.raises(BackupError, match="empty"),
        ):
            await database_backup_handler(session, _job({}), context=context)

        assert await _audit_entries(session) == []

    @pytest.mark.asyncio
    async def test_dump_timeout(self, session, context):
        fake, _ = _fake_dump()

        async def slow_wait_for(awaitable, timeout):
            awaitable.close()
            raise TimeoutError

        with (
            patch("clinicsync.worker.handlers.backup.asyncio.create_subprocess_exec", fake),
            patch("clinicsync.worker.handlers.backup.asyncio.wait_for", slow_wait_for),
            pytest.raises(BackupError, match="timed out"),
        ):
            await database_backup_handler(session, _job({}), context=context)

    @pytest.mark.asyncio
    async def test_file_backup(self, session, context, tmp_path):
        uploads = tmp_path / "uploads"
        uploads.mkdir()
        (uploads / "scan.pdf").write_bytes(b"%PDF-1.4")

        result = await file_backup_handler(session, _job({}), context=context)

        assert result["backupFile"].endswith(".tar.gz")
        assert (Path(result["backupPath"]) / result["backupFile"]).is_file()
        [entry] = await _audit_entries(session)
        assert entry.action == "file_backup"

    @pytest.mark.asyncio
    async def test_file_backup_missing_source(self, session, context):
        with pytest.raises(FileNotFoundError):
            await file_backup_handler(session, _job({}), context=context)

