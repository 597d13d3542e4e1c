"""clinicsync worker service.

PostgreSQL-backed background job runner for the clinic queues:
- claims: SHA claim submission and reconciliation
- inventory: low-stock, expiry and reorder alerts
- notifications: email and SMS delivery
- backup: database dumps and file archives

Recurring jobs are fired by the cron scheduler running in the same process.

Usage:
    # Run as module
    python -m clinicsync.worker

    # Or through the console script
    clinicsync-worker
"""

from clinicsync.worker.main import Worker, WorkerConfig, register_default_handlers, run

__all__ = ["Worker", "WorkerConfig", "register_default_handlers", "run"]
