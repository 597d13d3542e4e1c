"""Job queue backed by the ``jobs`` table.

Workers compete for rows with ``SELECT ... FOR UPDATE SKIP LOCKED`` so a job
is never handed to two workers at once. Failed attempts are rescheduled with
exponential backoff until ``max_attempts`` is used up, after which the row
stays in FAILED status as a dead letter. ``remove_on_complete`` and
``remove_on_fail`` bound how many finished rows of a job type are retained.

The caller owns the session and its commit:

    async with session_factory() as session:
        queue = JobQueueService(session)
        job = await queue.claim_job("worker-1", queue="claims")
        if job:
            try:
                ...
                await queue.complete_job(job.job_id)
            except Exception as e:
                await queue.fail_job(job.job_id, str(e))
        await session.commit()
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError

from clinicsync.db.models.base import JobStatus
from clinicsync.db.models.jobs import Job

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterator

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class QueueName(str, Enum):
    """The four independent work queues."""

    CLAIMS = "claims"
    INVENTORY = "inventory"
    NOTIFICATIONS = "notifications"
    BACKUP = "backup"


class JobType(str, Enum):
    """Supported job types, each handled by one registered handler."""

    SUBMIT_SINGLE_CLAIM = "submit_single_claim"
    SUBMIT_CLAIM_BATCH = "submit_claim_batch"
    RECONCILE_CLAIMS = "reconcile_claims"
    CHECK_LOW_STOCK = "check_low_stock"
    CHECK_EXPIRING_ITEMS = "check_expiring_items"
    GENERATE_REORDER_REPORT = "generate_reorder_report"
    SEND_SMS = "send_sms"
    SEND_EMAIL = "send_email"
    SEND_OVERDUE_REMINDER = "send_overdue_reminder"
    DATABASE_BACKUP = "database_backup"
    FILE_BACKUP = "file_backup"


@dataclass(frozen=True, slots=True)
class RepeatOptions:
    """Cron schedule for a repeatable job (standard 5-field expression)."""

    cron: str


@dataclass(frozen=True, slots=True)
class JobOptions:
    """Per-job options accepted by Queue.add.

    Attributes:
        attempts: Maximum attempts before the job is dead-lettered.
        backoff_seconds: Base retry delay, doubled on each attempt.
        repeat: Register as a cron-driven repeatable job instead of enqueueing once.
        remove_on_complete: Keep at most this many completed jobs of the same type.
        remove_on_fail: Keep at most this many failed jobs of the same type.
        priority: Lower runs first.
        delay: Seconds before the job becomes eligible.
    """

    attempts: int | None = None
    backoff_seconds: int | None = None
    repeat: RepeatOptions | None = None
    remove_on_complete: int | None = None
    remove_on_fail: int | None = None
    priority: int = 100
    delay: float = 0


class JobQueueError(Exception):
    """A queue operation could not be carried out."""


class JobNotFoundError(JobQueueError):
    """No job row exists for the given id."""


def _elapsed_ms(job: Job, now: datetime) -> int | None:
    if job.started_at is None:
        return None
    return int((now - job.started_at).total_seconds() * 1000)


def _release(job: Job, now: datetime) -> None:
    job.locked_at = None
    job.locked_by = None
    job.updated_at = now


class JobQueueService:
    """Enqueue, claim and settle jobs on one session.

    Attributes:
        session: Session all statements run on. Never committed here.
        default_queue: Queue used when a call names none.
        default_max_attempts: Attempts granted when JobOptions leaves it unset.
        default_base_backoff: Base retry delay in seconds when JobOptions leaves it unset.
    """

    def __init__(
        self,
        session: AsyncSession,
        default_queue: str = "default",
        default_max_attempts: int = 3,
        default_base_backoff: int = 60,
    ) -> None:
        self.session = session
        self.default_queue = default_queue
        self.default_max_attempts = default_max_attempts
        self.default_base_backoff = default_base_backoff

    @contextmanager
    def _storage_errors(self, operation: str) -> Iterator[None]:
        """Re-raise database errors from ``operation`` as JobQueueError."""
        try:
            yield
        except SQLAlchemyError as e:
            logger.error("Failed to %s: %s", operation, e)
            raise JobQueueError(f"Failed to {operation}: {e}") from e

    async def enqueue(
        self,
        job_type: str | JobType,
        payload: dict[str, Any] | None = None,
        *,
        queue: str | QueueName | None = None,
        options: JobOptions | None = None,
        run_at: datetime | None = None,
        repeat_key: str | None = None,
    ) -> uuid.UUID:
        """Insert a pending job.

        Args:
            job_type: Handler key for the job.
            payload: JSON data handed to the handler.
            queue: Target queue, ``default_queue`` when omitted.
            options: Attempts, backoff, retention, priority and delay.
            run_at: Eligibility time. Takes precedence over ``options.delay``.
            repeat_key: Set when a repeatable registration produced the job.

        Returns:
            The new job's id.

        Raises:
            JobQueueError: If the insert fails.
        """
        opts = options or JobOptions()
        backoff = opts.backoff_seconds
        if backoff is None:
            backoff = self.default_base_backoff
        if isinstance(job_type, JobType):
            job_type = job_type.value
        if isinstance(queue, QueueName):
            queue = queue.value

        job = Job(
            job_type=job_type,
            queue=queue or self.default_queue,
            status=JobStatus.PENDING,
            run_at=run_at or datetime.now(UTC) + timedelta(seconds=opts.delay),
            payload_json=payload,
            priority=opts.priority,
            max_attempts=opts.attempts or self.default_max_attempts,
            base_backoff_seconds=backoff,
            remove_on_complete=opts.remove_on_complete,
            remove_on_fail=opts.remove_on_fail,
            repeat_key=repeat_key,
        )

        with self._storage_errors("enqueue job"):
            self.session.add(job)
            await self.session.flush()

        logger.info(
            "Enqueued %s on %s as %s (eligible %s)",
            job.job_type,
            job.queue,
            job.job_id,
            job.run_at.isoformat(),
        )
        return job.job_id

    async def claim_job(
        self,
        worker_id: str,
        queue: str | None = None,
        job_types: list[str] | None = None,
    ) -> Job | None:
        """Lock the next eligible job of a queue for ``worker_id``.

        Eligible jobs are PENDING with ``run_at`` in the past; the lowest
        priority value wins, then the earliest ``run_at``.

        Returns:
            The claimed job, now RUNNING, or None when the queue is idle.

        Raises:
            JobQueueError: If the query fails.
        """
        now = datetime.now(UTC)
        conditions = [
            Job.queue == (queue or self.default_queue),
            Job.status == JobStatus.PENDING,
            Job.run_at <= now,
        ]
        if job_types:
            conditions.append(Job.job_type.in_(job_types))

        next_job = (
            select(Job)
            .where(*conditions)
            .order_by(Job.priority, Job.run_at)
            .limit(1)
            .with_for_update(skip_locked=True)
        )

        with self._storage_errors("claim job"):
            job = (await self.session.execute(next_job)).scalar_one_or_none()
            if job is None:
                return None

            job.attempts += 1
            job.status = JobStatus.RUNNING
            job.locked_by = worker_id
            job.locked_at = job.started_at = job.updated_at = now
            await self.session.flush()

        logger.info(
            "%s took %s job %s (attempt %d of %d)",
            worker_id,
            job.job_type,
            job.job_id,
            job.attempts,
            job.max_attempts,
        )
        return job

    async def complete_job(
        self,
        job_id: uuid.UUID,
        result: dict[str, Any] | None = None,
    ) -> None:
        """Record success for a job and apply its ``remove_on_complete`` bound.

        Raises:
            JobNotFoundError: If the job does not exist.
            JobQueueError: If the update fails.
        """
        now = datetime.now(UTC)

        with self._storage_errors(f"complete job {job_id}"):
            job = await self._require_job(job_id)
            job.status = JobStatus.COMPLETED
            job.result_json = result
            job.completed_at = now
            job.duration_ms = _elapsed_ms(job, now)
            _release(job, now)
            await self.session.flush()

            if job.remove_on_complete is not None:
                await self._trim_retention(job, JobStatus.COMPLETED, job.remove_on_complete)

        logger.info("Job %s (%s) completed in %sms", job_id, job.job_type, job.duration_ms)

    async def fail_job(self, job_id: uuid.UUID, error: str) -> bool:
        """Record a failed attempt.

        While attempts remain, the job returns to PENDING and becomes
        eligible again after ``base_backoff_seconds * 2 ** (attempts - 1)``.
        Otherwise it is dead-lettered in FAILED status and its
        ``remove_on_fail`` bound is applied.

        Returns:
            True if another attempt is scheduled.

        Raises:
            JobNotFoundError: If the job does not exist.
            JobQueueError: If the update fails.
        """
        now = datetime.now(UTC)

        with self._storage_errors(f"fail job {job_id}"):
            job = await self._require_job(job_id)
            job.last_error = error
            _release(job, now)

            if job.attempts < job.max_attempts:
                delay = job.base_backoff_seconds * 2 ** (job.attempts - 1)
                job.status = JobStatus.PENDING
                job.run_at = now + timedelta(seconds=delay)
                await self.session.flush()
                logger.info(
                    "Job %s (%s) failed attempt %d of %d, retrying in %ds: %s",
                    job_id,
                    job.job_type,
                    job.attempts,
                    job.max_attempts,
                    delay,
                    error,
                )
                return True

            job.status = JobStatus.FAILED
            job.completed_at = now
            job.duration_ms = _elapsed_ms(job, now)
            await self.session.flush()
            if job.remove_on_fail is not None:
                await self._trim_retention(job, JobStatus.FAILED, job.remove_on_fail)

        logger.warning(
            "Job %s (%s) dead-lettered after %d attempts: %s",
            job_id,
            job.job_type,
            job.attempts,
            error,
        )
        return False

    async def cancel_job(self, job_id: uuid.UUID) -> None:
        """Cancel a job that no worker has picked up yet.

        Raises:
            JobNotFoundError: If the job does not exist.
            JobQueueError: If the job is no longer pending.
        """
        with self._storage_errors(f"cancel job {job_id}"):
            job = await self._require_job(job_id)
            if job.status != JobStatus.PENDING:
                raise JobQueueError(f"Cannot cancel job in {job.status.value} status")

            job.status = JobStatus.CANCELLED
            job.completed_at = datetime.now(UTC)
            await self.session.flush()

        logger.info("Job %s (%s) cancelled", job_id, job.job_type)

    async def get_job(self, job_id: uuid.UUID) -> Job | None:
        return await self._find_job(job_id)

    async def get_pending_count(
        self,
        queue: str | None = None,
        job_type: str | None = None,
    ) -> int:
        """Number of PENDING jobs, optionally narrowed to a queue and type."""
        stmt = select(func.count(Job.job_id)).where(Job.status == JobStatus.PENDING)
        if queue:
            stmt = stmt.where(Job.queue == queue)
        if job_type:
            stmt = stmt.where(Job.job_type == job_type)
        return (await self.session.execute(stmt)).scalar() or 0

    async def has_pending_job(self, repeat_key: str) -> bool:
        """Whether a repeatable registration already has a job waiting."""
        stmt = select(func.count(Job.job_id)).where(
            Job.repeat_key == repeat_key, Job.status == JobStatus.PENDING
        )
        return bool((await self.session.execute(stmt)).scalar())

    async def get_failed_jobs(
        self,
        queue: str | None = None,
        job_type: str | None = None,
        limit: int = 100,
    ) -> list[Job]:
        """Dead-lettered jobs, most recently failed first."""
        stmt = select(Job).where(Job.status == JobStatus.FAILED)
        if queue:
            stmt = stmt.where(Job.queue == queue)
        if job_type:
            stmt = stmt.where(Job.job_type == job_type)
        stmt = stmt.order_by(Job.completed_at.desc()).limit(limit)
        return list((await self.session.execute(stmt)).scalars().all())

    async def retry_failed_job(self, job_id: uuid.UUID) -> None:
        """Put a dead-lettered job back in the queue with a fresh attempt budget.

        Raises:
            JobNotFoundError: If the job does not exist.
            JobQueueError: If the job is not in FAILED status.
        """
        with self._storage_errors(f"retry job {job_id}"):
            job = await self._require_job(job_id)
            if job.status != JobStatus.FAILED:
                raise JobQueueError(
                    f"Can only retry FAILED jobs, current status: {job.status.value}"
                )

            job.status = JobStatus.PENDING
            job.run_at = datetime.now(UTC)
            job.attempts = 0
            job.last_error = job.completed_at = job.duration_ms = None
            await self.session.flush()

        logger.info("Dead-lettered job %s (%s) requeued", job_id, job.job_type)

    async def cleanup_stale_jobs(self, stale_threshold_seconds: int = 600) -> int:
        """Return RUNNING jobs whose lock outlived the threshold to PENDING.

        A lock that old means the worker holding it died mid-job.

        Returns:
            How many jobs were requeued.
        """
        now = datetime.now(UTC)
        requeue = (
            update(Job)
            .where(
                Job.status == JobStatus.RUNNING,
                Job.locked_at < now - timedelta(seconds=stale_threshold_seconds),
            )
            .values(status=JobStatus.PENDING, locked_at=None, locked_by=None, run_at=now)
            .returning(Job.job_id)
        )

        with self._storage_errors("cleanup stale jobs"):
            requeued = (await self.session.execute(requeue)).scalars().all()

        if requeued:
            logger.warning("Requeued %d jobs held by dead workers: %s", len(requeued), requeued)
        return len(requeued)

    async def _trim_retention(self, job: Job, status: JobStatus, keep: int) -> int:
        """Delete all but the newest ``keep`` rows sharing the job's queue, type and status."""
        overflow = (
            select(Job.job_id)
            .where(Job.queue == job.queue, Job.job_type == job.job_type, Job.status == status)
            .order_by(Job.completed_at.desc(), Job.created_at.desc())
            .offset(keep)
        )
        doomed = (await self.session.execute(overflow)).scalars().all()
        if doomed:
            await self.session.execute(delete(Job).where(Job.job_id.in_(doomed)))
            logger.debug("Dropped %d old %s %s jobs", len(doomed), status.value, job.job_type)
        return len(doomed)

    async def _find_job(self, job_id: uuid.UUID) -> Job | None:
        result = await self.session.execute(select(Job).where(Job.job_id == job_id))
        return result.scalar_one_or_none()

    async def _require_job(self, job_id: uuid.UUID) -> Job:
        job = await self._find_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job
