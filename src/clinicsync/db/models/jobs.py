"""Tables behind the job queues and the cron scheduler."""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import JSON, BigInteger, Enum, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from clinicsync.db.models.base import (
    Base,
    JobStatus,
    OptionalTimestampTZ,
    TimestampTZ,
    UTCDateTime,
    UUIDPrimaryKey,
)


class Job(Base):
    """One unit of queued work.

    A row moves PENDING -> RUNNING -> COMPLETED, or back to PENDING with a
    later ``run_at`` after a failed attempt, until ``max_attempts`` leaves it
    FAILED. ``locked_by`` and ``locked_at`` identify the worker slot holding
    a RUNNING job.
    """

    __tablename__ = "jobs"

    job_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    queue: Mapped[str] = mapped_column(String(100), default="default", nullable=False)
    job_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="job_status", create_constraint=True),
        default=JobStatus.PENDING,
        nullable=False,
    )
    # Lower values are claimed first
    priority: Mapped[int] = mapped_column(default=100, nullable=False)
    run_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    payload_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    result_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    attempts: Mapped[int] = mapped_column(default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(default=3, nullable=False)
    base_backoff_seconds: Mapped[int] = mapped_column(default=60, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    locked_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    locked_at: Mapped[OptionalTimestampTZ]
    started_at: Mapped[OptionalTimestampTZ]
    completed_at: Mapped[OptionalTimestampTZ]
    duration_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Finished rows of the same queue and type kept after this one settles
    remove_on_complete: Mapped[int | None] = mapped_column(nullable=True)
    remove_on_fail: Mapped[int | None] = mapped_column(nullable=True)

    repeat_key: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_jobs_claimable", "queue", "status", "priority", "run_at"),
        Index("ix_jobs_type_status", "job_type", "status"),
        Index("ix_jobs_repeat_key", "repeat_key"),
        Index("ix_jobs_completed_at", "completed_at"),
    )


class RepeatableJob(Base):
    """A cron registration that enqueues a Job each time it comes due.

    ``key`` is unique, so registering the same schedule from several
    processes yields one row. Schedulers advance ``next_run_at`` with a
    conditional update and only the winner enqueues.
    """

    __tablename__ = "repeatable_jobs"

    repeatable_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    key: Mapped[str] = mapped_column(String(255), nullable=False)
    queue: Mapped[str] = mapped_column(String(100), nullable=False)
    job_type: Mapped[str] = mapped_column(String(100), nullable=False)
    cron: Mapped[str] = mapped_column(String(100), nullable=False)
    payload_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    max_attempts: Mapped[int] = mapped_column(default=3, nullable=False)
    base_backoff_seconds: Mapped[int] = mapped_column(default=60, nullable=False)
    remove_on_complete: Mapped[int | None] = mapped_column(nullable=True)
    remove_on_fail: Mapped[int | None] = mapped_column(nullable=True)

    next_run_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    last_enqueued_at: Mapped[OptionalTimestampTZ]

    __table_args__ = (
        UniqueConstraint("key", name="uq_repeatable_jobs_key"),
        Index("ix_repeatable_jobs_next_run_at", "next_run_at"),
    )
