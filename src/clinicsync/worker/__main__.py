"""Allow running the worker with ``python -m clinicsync.worker``."""

from clinicsync.worker.main import run

run()
