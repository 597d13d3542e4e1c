"""Worker process for the clinic job queues.

Each queue with registered handlers gets ``concurrency`` slots. A slot claims
one job at a time, runs the handler for its type and settles the job through
JobQueueService, which owns retry and dead-letter rules. Alongside the slots
the worker runs the cron scheduler and a sweep that requeues jobs left
RUNNING by a crashed process. SIGTERM and SIGINT stop it gracefully.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import signal
import sys
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from clinicsync.services.job_queue import JobQueueError, JobQueueService, JobType, QueueName
from clinicsync.worker.scheduler import Scheduler, run_scheduler_loop

if TYPE_CHECKING:
    from collections.abc import Awaitable, Mapping

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from clinicsync.core.config import JobSettings
    from clinicsync.worker.handlers import HandlerContext
    from clinicsync.worker.queues import Queue

logger = logging.getLogger(__name__)


def _new_worker_id() -> str:
    return f"worker-{uuid.uuid4().hex[:8]}"


@dataclass
class WorkerConfig:
    """Runtime knobs for one worker process.

    Attributes:
        worker_id: Prefix of the lock owner recorded on claimed jobs.
        poll_interval: Idle wait of a slot between empty claims, in seconds.
        stale_job_threshold_seconds: Lock age after which a RUNNING job is requeued.
        scheduler_interval: Seconds between cron checks.
        run_scheduler: Fire cron schedules from this process.
        shutdown_timeout: Grace period for in-flight jobs on shutdown.
    """

    worker_id: str = field(default_factory=_new_worker_id)
    poll_interval: float = 1.0
    stale_job_threshold_seconds: int = 600
    scheduler_interval: float = 30.0
    run_scheduler: bool = True
    shutdown_timeout: float = 30.0

    @classmethod
    def from_settings(cls, settings: JobSettings) -> WorkerConfig:
        return cls(
            poll_interval=settings.poll_interval,
            stale_job_threshold_seconds=settings.stale_job_threshold_seconds,
            scheduler_interval=settings.scheduler_interval,
            shutdown_timeout=settings.shutdown_timeout,
        )


class Worker:
    """Runs the handlers registered on a set of queues.

    Claims use ``FOR UPDATE SKIP LOCKED``, so slots of this worker and of
    other worker processes can share a queue.

    Example:
        queues = create_queues(session_factory, settings.jobs)
        queues["claims"].process("submit_single_claim", handler, concurrency=2)
        worker = Worker(WorkerConfig(), session_factory, queues)
        await worker.start()
    """

    def __init__(
        self,
        config: WorkerConfig,
        session_factory: async_sessionmaker[AsyncSession],
        queues: Mapping[str, Queue],
        scheduler: Scheduler | None = None,
    ) -> None:
        self.config = config
        self._session_factory = session_factory
        self._queues = dict(queues)
        self._scheduler = scheduler or Scheduler(session_factory)
        self._stopping = asyncio.Event()
        self._counts = {"processed": 0, "failed": 0}

    @property
    def stats(self) -> dict[str, int]:
        """Jobs completed and jobs dead-lettered by this worker."""
        return dict(self._counts)

    async def start(self) -> None:
        """Run until stop() is called."""
        began = time.monotonic()
        slots = {name: q.concurrency for name, q in self._queues.items() if q.handlers}
        logger.info("Worker %s serving %s", self.config.worker_id, slots)

        loops: dict[str, Awaitable[None]] = {
            f"{name}-slot-{n}": self._slot_loop(name, n)
            for name, count in slots.items()
            for n in range(count)
        }
        loops["stale-sweep"] = self._sweep_loop()
        if self.config.run_scheduler:
            loops["scheduler"] = run_scheduler_loop(
                self._scheduler,
                check_interval=self.config.scheduler_interval,
                shutdown_event=self._stopping,
            )

        tasks = [asyncio.create_task(coro, name=name) for name, coro in loops.items()]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            logger.info(
                "Worker %s stopped after %.0fs (processed=%d, failed=%d)",
                self.config.worker_id,
                time.monotonic() - began,
                self._counts["processed"],
                self._counts["failed"],
            )

    async def stop(self) -> None:
        """Ask every loop to finish; a slot completes its current job first."""
        logger.info("Worker %s stopping", self.config.worker_id)
        self._stopping.set()

    async def _idle(self, seconds: float) -> None:
        """Sleep for ``seconds`` or until stop() is called."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)

    async def _slot_loop(self, queue_name: str, slot: int) -> None:
        while not self._stopping.is_set():
            try:
                claimed = await self.run_once(queue_name, slot=slot)
            except Exception:
                # The slot outlives any single broken poll
                logger.exception("Slot %s/%d crashed while polling", queue_name, slot)
                await asyncio.sleep(1.0)
                continue
            if not claimed:
                await self._idle(self.config.poll_interval)

    async def _sweep_loop(self) -> None:
        threshold = self.config.stale_job_threshold_seconds
        while not self._stopping.is_set():
            try:
                async with self._session_factory() as session:
                    if await JobQueueService(session).cleanup_stale_jobs(threshold):
                        await session.commit()
            except JobQueueError as e:
                logger.error("Stale job sweep failed: %s", e)
            await self._idle(threshold / 2)

    async def run_once(self, queue_name: str, *, slot: int = 0) -> bool:
        """Claim and run at most one job from ``queue_name``.

        The claim is committed before the handler runs so other slots see
        the lock. Handler writes share the session and are rolled back when
        the handler raises.

        Returns:
            False when the queue has no handlers or no claimable job.
        """
        handlers = self._queues[queue_name].handlers
        if not handlers:
            return False

        async with self._session_factory() as session:
            jobs = JobQueueService(session)
            job = await jobs.claim_job(
                worker_id=f"{self.config.worker_id}:{queue_name}:{slot}",
                queue=queue_name,
                job_types=list(handlers),
            )
            if job is None:
                return False
            await session.commit()
            # Rollback expires the row, so read what failure handling needs now
            job_id, job_type, attempt = job.job_id, job.job_type, job.attempts

            try:
                result = await handlers[job_type](session, job)
                await jobs.complete_job(job_id, result)
                await session.commit()
            except Exception as e:
                logger.exception(
                    "Handler for %s job %s raised on attempt %d", job_type, job_id, attempt
                )
                await session.rollback()
                await self._settle_failure(job_id, e)
            else:
                self._counts["processed"] += 1

        return True

    async def _settle_failure(self, job_id: uuid.UUID, error: Exception) -> None:
        # The handler's session is rolled back, so the failure gets its own
        async with self._session_factory() as session:
            retrying = await JobQueueService(session).fail_job(
                job_id, f"{type(error).__name__}: {error}"
            )
            await session.commit()
        if not retrying:
            self._counts["failed"] += 1


# Built-in jobs: owning queue, job type and handler function name
_DEFAULT_HANDLERS: list[tuple[QueueName, JobType, str]] = [
    (QueueName.CLAIMS, JobType.SUBMIT_SINGLE_CLAIM, "submit_single_claim_handler"),
    (QueueName.CLAIMS, JobType.SUBMIT_CLAIM_BATCH, "submit_claim_batch_handler"),
    (QueueName.CLAIMS, JobType.RECONCILE_CLAIMS, "reconcile_claims_handler"),
    (QueueName.INVENTORY, JobType.CHECK_LOW_STOCK, "check_low_stock_handler"),
    (QueueName.INVENTORY, JobType.CHECK_EXPIRING_ITEMS, "check_expiring_items_handler"),
    (QueueName.INVENTORY, JobType.GENERATE_REORDER_REPORT, "generate_reorder_report_handler"),
    (QueueName.NOTIFICATIONS, JobType.SEND_EMAIL, "send_email_handler"),
    (QueueName.NOTIFICATIONS, JobType.SEND_SMS, "send_sms_handler"),
    (QueueName.NOTIFICATIONS, JobType.SEND_OVERDUE_REMINDER, "send_overdue_reminder_handler"),
    (QueueName.BACKUP, JobType.DATABASE_BACKUP, "database_backup_handler"),
    (QueueName.BACKUP, JobType.FILE_BACKUP, "file_backup_handler"),
]


def register_default_handlers(
    queues: Mapping[str, Queue],
    context: HandlerContext,
    concurrency: Mapping[str, int] | None = None,
) -> None:
    """Bind ``context`` into each built-in handler and register it on its queue.

    Args:
        queues: Queues keyed by name, as returned by create_queues().
        context: Collaborators shared by every handler.
        concurrency: Slot count per queue name; queues not listed get one.
    """
    from clinicsync.worker import handlers

    slots = dict(concurrency or {})
    for queue_name, job_type, handler_name in _DEFAULT_HANDLERS:
        queues[queue_name.value].process(
            job_type,
            functools.partial(getattr(handlers, handler_name), context=context),
            concurrency=slots.get(queue_name.value, 1),
        )


async def serve() -> None:
    """Build the worker from settings and run it until SIGTERM or SIGINT."""
    from clinicsync.core.settings import get_settings
    from clinicsync.db import create_engine, create_session_factory
    from clinicsync.services.clinic_records import ClinicRecords
    from clinicsync.services.messaging import EmailSender, SMSGateway
    from clinicsync.services.sha_client import SHAClient
    from clinicsync.worker.handlers import HandlerContext
    from clinicsync.worker.queues import create_queues

    settings = get_settings()
    engine = create_engine(settings.database)
    session_factory = create_session_factory(engine)
    sha_client = SHAClient(settings.sha)

    scheduler = Scheduler(session_factory)
    queues = create_queues(session_factory, settings.jobs, scheduler)
    register_default_handlers(
        queues,
        HandlerContext(
            settings=settings,
            records=ClinicRecords(),
            sha_client=sha_client,
            email=EmailSender(settings.messaging),
            sms=SMSGateway(settings.messaging),
        ),
        settings.jobs.concurrency,
    )
    config = WorkerConfig.from_settings(settings.jobs)
    worker = Worker(config, session_factory, queues, scheduler)

    interrupted = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, interrupted.set)

    try:
        await scheduler.register_defaults()
        running = asyncio.create_task(worker.start())
        await interrupted.wait()
        logger.info("Shutdown signal received")
        await worker.stop()
        try:
            await asyncio.wait_for(running, timeout=config.shutdown_timeout)
        except TimeoutError:
            logger.warning(
                "Jobs still running after %.0fs, cancelling", config.shutdown_timeout
            )
            running.cancel()
    finally:
        await sha_client.aclose()
        await engine.dispose()


def run() -> None:
    """Console entry point: configure logging and serve until interrupted."""
    from clinicsync.core.settings import get_settings

    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    try:
        asyncio.run(serve())
    except Exception:
        logger.exception("Worker exited with an error")
        sys.exit(1)
    logger.info("Worker shut down cleanly")


if __name__ == "__main__":
    run()
