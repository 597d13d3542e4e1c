"""Client-side state for the sync connection.

SyncClient holds what a staff UI renders: connection state, who is online,
who is typing where, the latest notifications and sync events. Every server
frame is reduced into that state by ``apply()``; actions are sent back over
the one persistent connection.

Example:
    client = SyncClient(on_toast=print)
    async with WebSocketTransport.connect("ws://localhost:5000/ws/sync", token) as ws:
        await client.run(ws)
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from clinicsync.sync.events import ClientEvent, ServerEvent

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

logger = logging.getLogger(__name__)

HISTORY_SIZE = 50


class ClientTransport(Protocol):
    """A bidirectional frame channel to the sync endpoint."""

    async def send(self, frame: dict[str, Any]) -> None: ...

    async def receive(self) -> dict[str, Any] | None:
        """Next frame, or None once the connection is closed."""
        ...

    async def close(self) -> None: ...


@dataclass(frozen=True, slots=True)
class Toast:
    title: str
    description: str
    variant: str = "default"


class WebSocketTransport:
    """ClientTransport over a websockets client connection."""

    def __init__(self, connection: ClientConnection) -> None:
        self._connection = connection

    @classmethod
    def connect(cls, url: str, token: str, **kwargs: Any) -> _WebSocketConnector:
        """Open ``url?token=...``; use as ``async with WebSocketTransport.connect(...)``."""
        separator = "&" if "?" in url else "?"
        return _WebSocketConnector(f"{url}{separator}token={token}", kwargs)

    async def send(self, frame: dict[str, Any]) -> None:
        await self._connection.send(json.dumps(frame))

    async def receive(self) -> dict[str, Any] | None:
        try:
            raw = await self._connection.recv()
        except ConnectionClosed as e:
            logger.info("Sync connection closed: %s", e)
            return None
        return json.loads(raw)

    async def close(self) -> None:
        await self._connection.close()


class _WebSocketConnector:
    def __init__(self, uri: str, options: dict[str, Any]) -> None:
        self._uri = uri
        self._options = options
        self._transport: WebSocketTransport | None = None

    async def __aenter__(self) -> WebSocketTransport:
        connection = await ws_connect(self._uri, **self._options)
        self._transport = WebSocketTransport(connection)
        return self._transport

    async def __aexit__(self, *exc_info: object) -> None:
        if self._transport is not None:
            await self._transport.close()


class SyncClient:
    """Reactive sync state for one signed-in user."""

    def __init__(
        self,
        *,
        history_size: int = HISTORY_SIZE,
        on_toast: Callable[[Toast], None] | None = None,
    ) -> None:
        self.history_size = history_size
        self.is_connected = False
        self.user: dict[str, Any] | None = None
        self.connected_users: list[dict[str, Any]] = []
        self.notifications: list[dict[str, Any]] = []
        self.typing_users: list[dict[str, Any]] = []
        self.sync_events: list[dict[str, Any]] = []
        self.last_error: dict[str, Any] | None = None
        self._transport: ClientTransport | None = None
        self._toast_listeners: list[Callable[[Toast], None]] = []
        self._event_listeners: dict[str, list[Callable[[dict[str, Any]], None]]] = {}
        if on_toast is not None:
            self._toast_listeners.append(on_toast)

    # -- listeners -------------------------------------------------------------

    def add_toast_listener(self, listener: Callable[[Toast], None]) -> None:
        self._toast_listeners.append(listener)

    def on(self, event: str | ServerEvent, listener: Callable[[dict[str, Any]], None]) -> None:
        """Call listener with the payload of every ``event`` frame after it is reduced."""
        name = event.value if isinstance(event, ServerEvent) else event
        self._event_listeners.setdefault(name, []).append(listener)

    def _toast(self, toast: Toast) -> None:
        for listener in self._toast_listeners:
            listener(toast)

    # -- connection ------------------------------------------------------------

    async def run(self, transport: ClientTransport) -> None:
        """Consume frames from transport until it closes."""
        self._transport = transport
        self.is_connected = True
        try:
            while True:
                frame = await transport.receive()
                if frame is None:
                    break
                self.apply(frame)
        finally:
            self.is_connected = False
            self._transport = None

    def apply(self, frame: dict[str, Any]) -> None:
        """Reduce one ``{"event", "data"}`` server frame into local state.

        Unknown events are ignored so older clients survive newer servers.
        """
        event = frame.get("event")
        data = frame.get("data") or {}

        if event == ServerEvent.CONNECTED:
            self.user = data
            self._upsert_user(
                {
                    "userId": data.get("userId"),
                    "username": data.get("username"),
                    "role": data.get("role"),
                    "status": "online",
                    "last_seen": datetime.now(UTC).isoformat(),
                }
            )
        elif event == ServerEvent.SYNC_EVENT:
            self.sync_events = [data, *self.sync_events][: self.history_size]
            action = data.get("action")
            if action in ("create", "update"):
                created = action == "create"
                entity_type = data.get("entityType")
                self._toast(
                    Toast(
                        title=f"{entity_type} {'Created' if created else 'Updated'}",
                        description=f"{data.get('username')} "
                        f"{'created' if created else 'updated'} a {entity_type}",
                    )
                )
        elif event == ServerEvent.NOTIFICATION:
            self.notifications = [data, *self.notifications][: self.history_size]
            self._toast(
                Toast(
                    title=data.get("title", ""),
                    description=data.get("message", ""),
                    variant="destructive" if data.get("priority") == "urgent" else "default",
                )
            )
        elif event == ServerEvent.PRESENCE_UPDATE:
            self._upsert_user(data)
        elif event in (ServerEvent.USER_OFFLINE, ServerEvent.USER_DISCONNECTED):
            user_id = data.get("userId")
            self.connected_users = [u for u in self.connected_users if u.get("userId") != user_id]
            self.typing_users = [t for t in self.typing_users if t.get("userId") != user_id]
        elif event == ServerEvent.USER_TYPING:
            self._apply_typing(data)
        elif event in (ServerEvent.ENTITY_EDIT_START, ServerEvent.ENTITY_EDIT_STOP):
            logger.debug(
                "%s %s editing %s %s",
                data.get("username"),
                "started" if event == ServerEvent.ENTITY_EDIT_START else "stopped",
                data.get("entityType"),
                data.get("entityId"),
            )
        elif event == ServerEvent.ERROR:
            self.last_error = data
            logger.warning("Sync server rejected a frame: %s", data.get("message"))

        for listener in self._event_listeners.get(str(event), []):
            listener(data)

    def _upsert_user(self, presence: dict[str, Any]) -> None:
        user_id = presence.get("userId")
        for index, existing in enumerate(self.connected_users):
            if existing.get("userId") == user_id:
                self.connected_users[index] = {**existing, **presence}
                return
        self.connected_users.append(dict(presence))

    def _apply_typing(self, data: dict[str, Any]) -> None:
        def same(entry: dict[str, Any]) -> bool:
            return (
                entry.get("userId") == data.get("userId")
                and entry.get("entityId") == data.get("entityId")
                and entry.get("entityType") == data.get("entityType")
            )

        remaining = [t for t in self.typing_users if not same(t)]
        if data.get("isTyping"):
            # Overwrite in place so a repeated typing_start never duplicates
            for index, entry in enumerate(self.typing_users):
                if same(entry):
                    self.typing_users[index] = dict(data)
                    return
            remaining.append(dict(data))
        self.typing_users = remaining

    # -- actions ---------------------------------------------------------------

    async def _emit(self, event: ClientEvent, data: dict[str, Any]) -> bool:
        if self._transport is None or not self.is_connected:
            return False
        await self._transport.send({"event": event.value, "data": data})
        return True

    async def update_presence(self, **presence: Any) -> bool:
        """Send a partial presence update (status, current_page, typing fields...).

        Returns:
            False if there is no live connection; nothing is queued.
        """
        return await self._emit(ClientEvent.PRESENCE_UPDATE, presence)

    async def record_activity(self, activity: str | None, page: str | None = None) -> bool:
        return await self._emit(ClientEvent.USER_ACTIVITY, {"activity": activity, "page": page})

    async def start_typing(self, entity_id: str, entity_type: str) -> bool:
        return await self._emit(
            ClientEvent.TYPING_START, {"entityId": entity_id, "entityType": entity_type}
        )

    async def stop_typing(self, entity_id: str, entity_type: str) -> bool:
        return await self._emit(
            ClientEvent.TYPING_STOP, {"entityId": entity_id, "entityType": entity_type}
        )

    async def start_editing(self, entity_id: str, entity_type: str) -> bool:
        return await self._emit(
            ClientEvent.ENTITY_EDIT_START, {"entityId": entity_id, "entityType": entity_type}
        )

    async def stop_editing(self, entity_id: str, entity_type: str) -> bool:
        return await self._emit(
            ClientEvent.ENTITY_EDIT_STOP, {"entityId": entity_id, "entityType": entity_type}
        )

    # -- selectors -------------------------------------------------------------

    def get_typing_users(self, entity_id: str, entity_type: str) -> list[dict[str, Any]]:
        return [
            t
            for t in self.typing_users
            if t.get("entityId") == entity_id and t.get("entityType") == entity_type
        ]

    def get_online_users_by_role(self, role: str) -> list[dict[str, Any]]:
        return [
            u for u in self.connected_users if u.get("role") == role and u.get("status") == "online"
        ]

    def get_online_users_by_activity(self, activity: str) -> list[dict[str, Any]]:
        return [
            u
            for u in self.connected_users
            if u.get("current_activity") == activity and u.get("status") == "online"
        ]

    @property
    def connected_users_count(self) -> int:
        return len(self.connected_users)

    @property
    def unread_notifications_count(self) -> int:
        return sum(1 for n in self.notifications if not n.get("isRead"))
