"""Cron-driven scheduler for repeatable jobs.

The scheduler runs no job logic itself; it only guarantees that each
registered (queue, job_type, cron) entry is enqueued on schedule:

- Registration is idempotent per key, enforced by a unique constraint, so
  calling register() from several processes at startup yields one entry.
- tick() advances next_run_at with compare-and-set, so concurrent schedulers
  never enqueue the same slot twice.
- A slot is skipped while the previous run of the same entry is still
  pending; overlapping *running* instances are allowed and handlers must
  tolerate them.

Default schedules:
- check_low_stock every 6 hours
- check_expiring_items daily at 09:00
- reconcile_claims every 4 hours
- database_backup daily at 02:00
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from croniter import croniter
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from clinicsync.db.models.base import JobStatus
from clinicsync.db.models.jobs import Job, RepeatableJob
from clinicsync.services.job_queue import (
    JobOptions,
    JobQueueError,
    JobQueueService,
    JobType,
    QueueName,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


def repeat_key(queue: str, job_type: str, cron: str) -> str:
    return f"{queue}:{job_type}:{cron}"


def next_run_after(cron: str, after: datetime) -> datetime:
    """Next time cron fires strictly after the given moment (UTC)."""
    return croniter(cron, after.astimezone(UTC)).get_next(datetime).astimezone(UTC)


@dataclass
class ScheduledJob:
    """Definition of a cron-driven repeatable job.

    Attributes:
        queue: Queue the job is enqueued on.
        job_type: Type of job to schedule.
        cron: Standard five-field cron expression (UTC).
        payload: Job-specific payload data.
        attempts: Maximum attempts per run.
        backoff_seconds: Base retry backoff.
        remove_on_complete: Completed runs to keep.
        remove_on_fail: Failed runs to keep.
    """

    queue: str
    job_type: str
    cron: str
    payload: dict[str, Any] = field(default_factory=dict)
    attempts: int = 3
    backoff_seconds: int = 60
    remove_on_complete: int | None = None
    remove_on_fail: int | None = None

    @property
    def key(self) -> str:
        return repeat_key(self.queue, self.job_type, self.cron)


DEFAULT_SCHEDULES = [
    ScheduledJob(
        queue=QueueName.INVENTORY.value,
        job_type=JobType.CHECK_LOW_STOCK.value,
        cron="0 */6 * * *",
        remove_on_complete=10,
        remove_on_fail=5,
    ),
    ScheduledJob(
        queue=QueueName.INVENTORY.value,
        job_type=JobType.CHECK_EXPIRING_ITEMS.value,
        cron="0 9 * * *",
        payload={"days_ahead": 30},
        remove_on_complete=10,
        remove_on_fail=5,
    ),
    ScheduledJob(
        queue=QueueName.CLAIMS.value,
        job_type=JobType.RECONCILE_CLAIMS.value,
        cron="0 */4 * * *",
        remove_on_complete=10,
        remove_on_fail=5,
    ),
    ScheduledJob(
        queue=QueueName.BACKUP.value,
        job_type=JobType.DATABASE_BACKUP.value,
        cron="0 2 * * *",
        remove_on_complete=7,
        remove_on_fail=3,
    ),
]


class Scheduler:
    """Registers repeatable jobs and enqueues them when due.

    Example:
        scheduler = Scheduler(session_factory)
        await scheduler.register_defaults()
        await scheduler.tick()  # enqueue whatever is due
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def register(self, schedule: ScheduledJob, now: datetime | None = None) -> RepeatableJob:
        """Register a repeatable job; a second registration of the same key is a no-op.

        Raises:
            JobQueueError: If the cron expression is invalid or the store fails.
        """
        if not croniter.is_valid(schedule.cron):
            raise JobQueueError(f"Invalid cron expression: {schedule.cron!r}")

        now = now or datetime.now(UTC)
        key = schedule.key
        try:
            async with self._session_factory() as session:
                existing = await self._get_by_key(session, key)
                if existing is not None:
                    logger.debug("Repeatable job already registered: key=%s", key)
                    return existing

                repeatable = RepeatableJob(
                    key=key,
                    queue=schedule.queue,
                    job_type=schedule.job_type,
                    cron=schedule.cron,
                    payload_json=schedule.payload,
                    max_attempts=schedule.attempts,
                    base_backoff_seconds=schedule.backoff_seconds,
                    remove_on_complete=schedule.remove_on_complete,
                    remove_on_fail=schedule.remove_on_fail,
                    next_run_at=next_run_after(schedule.cron, now),
                )
                session.add(repeatable)
                try:
                    await session.commit()
                except IntegrityError:
                    # Another process registered the same key first
                    await session.rollback()
                    existing = await self._get_by_key(session, key)
                    if existing is None:
                        raise
                    return existing

                logger.info(
                    "Registered repeatable job: key=%s, next_run_at=%s",
                    key,
                    repeatable.next_run_at.isoformat(),
                )
                return repeatable

        except SQLAlchemyError as e:
            logger.error("Failed to register repeatable job %s: %s", key, str(e))
            raise JobQueueError(f"Failed to register repeatable job: {e}") from e

    async def register_defaults(self) -> list[RepeatableJob]:
        """Register the built-in recurring schedules."""
        registered = [await self.register(schedule) for schedule in DEFAULT_SCHEDULES]
        logger.info("Registered %d default schedules", len(registered))
        return registered

    async def remove(self, queue: str, job_type: str, cron: str) -> bool:
        """Remove a repeat schedule and cancel its runs that have not started.

        Returns:
            True if a registration was removed.
        """
        key = repeat_key(queue, job_type, cron)
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(RepeatableJob).where(RepeatableJob.key == key)
                )
                await session.execute(
                    update(Job)
                    .where(Job.repeat_key == key, Job.status == JobStatus.PENDING)
                    .values(status=JobStatus.CANCELLED, completed_at=datetime.now(UTC))
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise JobQueueError(f"Failed to remove repeatable job: {e}") from e

        removed = bool(result.rowcount)
        if removed:
            logger.info("Removed repeatable job: key=%s", key)
        return removed

    async def list_repeatables(self) -> list[RepeatableJob]:
        async with self._session_factory() as session:
            result = await session.execute(select(RepeatableJob).order_by(RepeatableJob.key))
            return list(result.scalars().all())

    async def tick(self, now: datetime | None = None) -> list[str]:
        """Enqueue every registered job whose next run time has passed.

        Returns:
            Keys of the repeatables that were enqueued.
        """
        now = now or datetime.now(UTC)
        enqueued: list[str] = []

        async with self._session_factory() as session:
            result = await session.execute(
                select(RepeatableJob).where(RepeatableJob.next_run_at <= now)
            )
            due = list(result.scalars().all())
            # Detached rows keep their loaded values across per-entry rollbacks
            session.expunge_all()

            for repeatable in due:
                try:
                    if await self._fire(session, repeatable, now):
                        enqueued.append(repeatable.key)
                    await session.commit()
                except (JobQueueError, SQLAlchemyError) as e:
                    await session.rollback()
                    logger.error(
                        "Failed to schedule repeatable job: key=%s, error=%s",
                        repeatable.key,
                        e,
                    )

        return enqueued

    async def _fire(self, session: AsyncSession, repeatable: RepeatableJob, now: datetime) -> bool:
        previous_run_at = repeatable.next_run_at
        following_run_at = next_run_after(repeatable.cron, now)

        # Compare-and-set: only the scheduler that advances the slot enqueues it
        claimed = await session.execute(
            update(RepeatableJob)
            .where(
                RepeatableJob.repeatable_id == repeatable.repeatable_id,
                RepeatableJob.next_run_at == previous_run_at,
            )
            .values(next_run_at=following_run_at, last_enqueued_at=now)
            .execution_options(synchronize_session=False)
        )
        if not claimed.rowcount:
            logger.debug("Slot already taken by another scheduler: key=%s", repeatable.key)
            return False

        job_queue = JobQueueService(session)
        if await job_queue.has_pending_job(repeatable.key):
            logger.info(
                "Skipping repeatable job - previous run still pending: key=%s",
                repeatable.key,
            )
            return False

        await job_queue.enqueue(
            repeatable.job_type,
            repeatable.payload_json,
            queue=repeatable.queue,
            options=JobOptions(
                attempts=repeatable.max_attempts,
                backoff_seconds=repeatable.base_backoff_seconds,
                remove_on_complete=repeatable.remove_on_complete,
                remove_on_fail=repeatable.remove_on_fail,
            ),
            run_at=now,
            repeat_key=repeatable.key,
        )
        logger.info(
            "Scheduled job: key=%s, next_due=%s",
            repeatable.key,
            following_run_at.isoformat(),
        )
        return True

    @staticmethod
    async def _get_by_key(session: AsyncSession, key: str) -> RepeatableJob | None:
        result = await session.execute(select(RepeatableJob).where(RepeatableJob.key == key))
        return result.scalar_one_or_none()


async def run_scheduler_loop(
    scheduler: Scheduler,
    check_interval: float = 30.0,
    shutdown_event: asyncio.Event | None = None,
) -> None:
    """Run the scheduler as a background task until shutdown_event is set."""
    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    logger.info("Scheduler starting: check_interval=%ss", check_interval)

    while not shutdown_event.is_set():
        try:
            scheduled = await scheduler.tick()
            if scheduled:
                logger.debug("Scheduled jobs: %s", scheduled)
        except SQLAlchemyError as e:
            logger.exception("Error in scheduler loop: %s", e)

        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=check_interval)

    logger.info("Scheduler stopped")
