"""Named queue façade over JobQueueService and the repeatable-job scheduler.

Producers call ``queue.add(job_type, payload, options)``; a worker process
registers handlers with ``queue.process(job_type, handler, concurrency)``.
Options carrying ``repeat`` register a cron schedule instead of enqueueing.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from clinicsync.services.job_queue import (
    JobOptions,
    JobQueueService,
    JobType,
    QueueName,
)
from clinicsync.worker.scheduler import ScheduledJob, Scheduler

if TYPE_CHECKING:
    import uuid
    from collections.abc import Callable, Coroutine, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from clinicsync.core.config import JobSettings
    from clinicsync.db.models.jobs import Job, RepeatableJob

logger = logging.getLogger(__name__)


class Queue:
    """One named work list with its handlers and slot count."""

    def __init__(
        self,
        name: str | QueueName,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        scheduler: Scheduler | None = None,
        default_attempts: int = 3,
        default_backoff_seconds: int = 60,
        concurrency: int = 1,
    ) -> None:
        self.name = name.value if isinstance(name, QueueName) else name
        self._session_factory = session_factory
        self._scheduler = scheduler or Scheduler(session_factory)
        self._default_attempts = default_attempts
        self._default_backoff_seconds = default_backoff_seconds
        self.concurrency = concurrency
        self._handlers: dict[str, Callable[..., Coroutine[Any, Any, dict[str, Any] | None]]] = {}

    @property
    def handlers(self) -> dict[str, Callable[..., Coroutine[Any, Any, dict[str, Any] | None]]]:
        return dict(self._handlers)

    @property
    def job_types(self) -> list[str]:
        return sorted(self._handlers)

    def _job_service(self, session: AsyncSession) -> JobQueueService:
        return JobQueueService(
            session,
            default_queue=self.name,
            default_max_attempts=self._default_attempts,
            default_base_backoff=self._default_backoff_seconds,
        )

    async def add(
        self,
        job_type: str | JobType,
        payload: dict[str, Any] | None = None,
        options: JobOptions | None = None,
    ) -> uuid.UUID | RepeatableJob:
        """Enqueue a job, or register it as repeatable when options.repeat is set.

        Returns:
            The job id, or the repeatable registration for cron jobs.

        Raises:
            JobQueueError: If the job cannot be stored.
        """
        options = options or JobOptions()
        job_type_value = job_type.value if isinstance(job_type, JobType) else job_type

        if options.repeat is not None:
            return await self._scheduler.register(
                ScheduledJob(
                    queue=self.name,
                    job_type=job_type_value,
                    cron=options.repeat.cron,
                    payload=payload or {},
                    attempts=options.attempts or self._default_attempts,
                    backoff_seconds=(
                        options.backoff_seconds
                        if options.backoff_seconds is not None
                        else self._default_backoff_seconds
                    ),
                    remove_on_complete=options.remove_on_complete,
                    remove_on_fail=options.remove_on_fail,
                )
            )

        async with self._session_factory() as session:
            job_id = await self._job_service(session).enqueue(
                job_type_value, payload, queue=self.name, options=options
            )
            await session.commit()
        return job_id

    async def remove_repeatable(self, job_type: str | JobType, cron: str) -> bool:
        job_type_value = job_type.value if isinstance(job_type, JobType) else job_type
        return await self._scheduler.remove(self.name, job_type_value, cron)

    def process(
        self,
        job_type: str | JobType,
        handler: Callable[..., Coroutine[Any, Any, dict[str, Any] | None]],
        concurrency: int = 1,
    ) -> None:
        """Register the handler for a job type on this queue.

        The queue runs as many worker slots as the largest concurrency
        requested by any of its handlers.
        """
        job_type_value = job_type.value if isinstance(job_type, JobType) else job_type
        self._handlers[job_type_value] = handler
        self.concurrency = max(self.concurrency, concurrency)
        logger.debug(
            "Registered handler: queue=%s, job_type=%s, concurrency=%d",
            self.name,
            job_type_value,
            self.concurrency,
        )

    async def get_pending_count(self) -> int:
        async with self._session_factory() as session:
            return await self._job_service(session).get_pending_count(queue=self.name)

    async def get_failed_jobs(self, limit: int = 100) -> Sequence[Job]:
        async with self._session_factory() as session:
            return await self._job_service(session).get_failed_jobs(queue=self.name, limit=limit)


def create_queues(
    session_factory: async_sessionmaker[AsyncSession],
    settings: JobSettings,
    scheduler: Scheduler | None = None,
) -> dict[str, Queue]:
    """Build the four clinic queues with their configured slot counts."""
    scheduler = scheduler or Scheduler(session_factory)
    return {
        name.value: Queue(
            name,
            session_factory,
            scheduler=scheduler,
            default_attempts=settings.default_max_attempts,
            default_backoff_seconds=settings.default_backoff_seconds,
            concurrency=settings.concurrency.get(name.value, 1),
        )
        for name in QueueName
    }
