"""clinicsync - real-time synchronization and background workflow core for the clinic system.

Provides the presence registry, the sync event bus, targeted notifications,
the queue-backed background jobs (claims, inventory, notifications, backups)
and the SHA claim workflow engine consumed by the clinic's REST handlers and
browser clients.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
