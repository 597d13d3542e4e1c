"""Tests for the cron-driven repeatable job scheduler.

Tests cover:
- Idempotent registration and cron validation
- Due-time evaluation and next_run_at advancement
- Skipping a slot while the previous run is still pending
- Removal of a schedule and its pending runs
- Queue.add with repeat options
"""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select

from clinicsync.core.config import JobSettings
from clinicsync.db.models.base import JobStatus
from clinicsync.db.models.jobs import Job
from clinicsync.services.job_queue import JobOptions, JobQueueError, JobType, RepeatOptions
from clinicsync.worker.queues import create_queues
from clinicsync.worker.scheduler import (
    DEFAULT_SCHEDULES,
    ScheduledJob,
    Scheduler,
    next_run_after,
    repeat_key,
)

T0 = datetime(2024, 3, 1, 1, 0, tzinfo=UTC)

LOW_STOCK = ScheduledJob(queue="inventory", job_type="check_low_stock", cron="0 */6 * * *")


async def _jobs(session_factory) -> list[Job]:
    async with session_factory() as session:
        result = await session.execute(select(Job).order_by(Job.created_at))
        return list(result.scalars().all())


class TestCron:
    """Tests for cron helpers."""

    def test_next_run_after(self):
        assert next_run_after("0 */6 * * *", T0) == datetime(2024, 3, 1, 6, 0, tzinfo=UTC)
        assert next_run_after("0 2 * * *", T0) == datetime(2024, 3, 1, 2, 0, tzinfo=UTC)

    def test_next_run_is_strictly_after(self):
        at_slot = datetime(2024, 3, 1, 6, 0, tzinfo=UTC)
        assert next_run_after("0 */6 * * *", at_slot) == datetime(2024, 3, 1, 12, 0, tzinfo=UTC)

    def test_default_schedules(self):
        crons = {s.job_type: s.cron for s in DEFAULT_SCHEDULES}
        assert crons == {
            "check_low_stock": "0 */6 * * *",
            "check_expiring_items": "0 9 * * *",
            "reconcile_claims": "0 */4 * * *",
            "database_backup": "0 2 * * *",
        }


class TestRegister:
    """Tests for repeatable registration."""

    @pytest.mark.asyncio
    async def test_register_is_idempotent(self, session_factory):
        scheduler = Scheduler(session_factory)

        first = await scheduler.register(LOW_STOCK, now=T0)
        second = await scheduler.register(LOW_STOCK, now=T0 + timedelta(days=1))

        assert first.repeatable_id == second.repeatable_id
        assert len(await scheduler.list_repeatables()) == 1
        assert first.next_run_at == datetime(2024, 3, 1, 6, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_invalid_cron_rejected(self, session_factory):
        scheduler = Scheduler(session_factory)

        with pytest.raises(JobQueueError, match="Invalid cron"):
            await scheduler.register(ScheduledJob(queue="claims", job_type="x", cron="every day"))

    @pytest.mark.asyncio
    async def test_register_defaults(self, session_factory):
        scheduler = Scheduler(session_factory)

        await scheduler.register_defaults()
        await scheduler.register_defaults()

        keys = {r.key for r in await scheduler.list_repeatables()}
        assert keys == {s.key for s in DEFAULT_SCHEDULES}


class TestTick:
    """Tests for firing due schedules."""

    @pytest.mark.asyncio
    async def test_nothing_due_before_next_run(self, session_factory):
        scheduler = Scheduler(session_factory)
        await scheduler.register(LOW_STOCK, now=T0)

        assert await scheduler.tick(now=T0 + timedelta(hours=1)) == []
        assert await _jobs(session_factory) == []

    @pytest.mark.asyncio
    async def test_due_schedule_enqueues_once(self, session_factory):
        scheduler = Scheduler(session_factory)
        await scheduler.register(LOW_STOCK, now=T0)
        slot = datetime(2024, 3, 1, 6, 0, tzinfo=UTC)

        assert await scheduler.tick(now=slot) == [LOW_STOCK.key]
        # Same clock again: the slot has already been advanced
        assert await scheduler.tick(now=slot) == []

        [job] = await _jobs(session_factory)
        assert job.queue == "inventory"
        assert job.job_type == "check_low_stock"
        assert job.repeat_key == LOW_STOCK.key
        assert job.status == JobStatus.PENDING

        [repeatable] = await scheduler.list_repeatables()
        assert repeatable.next_run_at == datetime(2024, 3, 1, 12, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_pending_previous_run_skips_slot(self, session_factory):
        scheduler = Scheduler(session_factory)
        await scheduler.register(LOW_STOCK, now=T0)

        await scheduler.tick(now=datetime(2024, 3, 1, 6, 0, tzinfo=UTC))
        skipped = await scheduler.tick(now=datetime(2024, 3, 1, 12, 0, tzinfo=UTC))

        assert skipped == []
        assert len(await _jobs(session_factory)) == 1
        [repeatable] = await scheduler.list_repeatables()
        assert repeatable.next_run_at == datetime(2024, 3, 1, 18, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_job_carries_schedule_options(self, session_factory):
        scheduler = Scheduler(session_factory)
        await scheduler.register(
            ScheduledJob(
                queue="backup",
                job_type="database_backup",
                cron="0 2 * * *",
                attempts=5,
                backoff_seconds=30,
                remove_on_complete=7,
                remove_on_fail=3,
            ),
            now=T0,
        )

        await scheduler.tick(now=datetime(2024, 3, 1, 2, 0, tzinfo=UTC))

        [job] = await _jobs(session_factory)
        assert job.max_attempts == 5
        assert job.base_backoff_seconds == 30
        assert job.remove_on_complete == 7
        assert job.remove_on_fail == 3


class TestRemove:
    """Tests for removing a schedule."""

    @pytest.mark.asyncio
    async def test_remove_cancels_pending_runs(self, session_factory):
        scheduler = Scheduler(session_factory)
        await scheduler.register(LOW_STOCK, now=T0)
        await scheduler.tick(now=datetime(2024, 3, 1, 6, 0, tzinfo=UTC))

        assert await scheduler.remove("inventory", "check_low_stock", "0 */6 * * *") is True

        assert await scheduler.list_repeatables() == []
        [job] = await _jobs(session_factory)
        assert job.status == JobStatus.CANCELLED
        assert await scheduler.remove("inventory", "check_low_stock", "0 */6 * * *") is False


class TestQueueRepeat:
    """Tests for Queue.add with repeat options."""

    @pytest.mark.asyncio
    async def test_add_with_repeat_registers_schedule(self, session_factory):
        scheduler = Scheduler(session_factory)
        queues = create_queues(session_factory, JobSettings(), scheduler)

        registration = await queues["claims"].add(
            JobType.RECONCILE_CLAIMS,
            {},
            JobOptions(repeat=RepeatOptions(cron="0 */4 * * *"), remove_on_complete=10),
        )

        assert registration.key == repeat_key("claims", "reconcile_claims", "0 */4 * * *")
        assert registration.remove_on_complete == 10
        assert await _jobs(session_factory) == []

    @pytest.mark.asyncio
    async def test_remove_repeatable_through_queue(self, session_factory):
        scheduler = Scheduler(session_factory)
        queues = create_queues(session_factory, JobSettings(), scheduler)
        await queues["claims"].add(
            JobType.RECONCILE_CLAIMS, {}, JobOptions(repeat=RepeatOptions(cron="0 */4 * * *"))
        )

        assert await queues["claims"].remove_repeatable(JobType.RECONCILE_CLAIMS, "0 */4 * * *")
        assert await scheduler.list_repeatables() == []
