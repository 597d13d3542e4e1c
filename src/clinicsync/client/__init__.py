"""Python consumer of the sync WebSocket contract."""

from clinicsync.client.sync_client import (
    ClientTransport,
    SyncClient,
    Toast,
    WebSocketTransport,
)

__all__ = ["ClientTransport", "SyncClient", "Toast", "WebSocketTransport"]
