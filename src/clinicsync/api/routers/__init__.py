"""clinicsync API routers.

- sync: WebSocket sync endpoint plus status and maintenance
- notifications: the authenticated user's inbox
- workflows: SHA claim workflow engine
"""

from clinicsync.api.routers.notifications import router as notifications_router
from clinicsync.api.routers.sync import router as sync_router
from clinicsync.api.routers.sync import ws_router as sync_ws_router
from clinicsync.api.routers.workflows import router as workflows_router

__all__ = [
    "notifications_router",
    "sync_router",
    "sync_ws_router",
    "workflows_router",
]
