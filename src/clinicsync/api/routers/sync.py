"""Real-time sync endpoints.

- ``WS /ws/sync?token=...``: the single persistent connection per client.
  Outbound frames are ``{"event": name, "data": payload}``; inbound frames use
  the same shape with the client event names.
- ``/api/sync/*``: status counters, online users, recent sync events,
  publishing entity changes and the cleanup sweep.
"""

from __future__ import annotations

import json
import logging
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, Query, WebSocket, WebSocketDisconnect, status

from clinicsync.api.dependencies import IdentityDep, ServicesDep, require_role
from clinicsync.api.schemas.sync import CleanupResponse, OnlineUser, SyncStatusResponse
from clinicsync.errors import AuthenticationError, ClinicSyncError
from clinicsync.services.auth import Identity
from clinicsync.sync.events import OutboundEvent, ServerEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])
ws_router = APIRouter(tags=["sync"])

AdminDep = Annotated[Identity, Depends(require_role("ADMIN"))]


def _error_frame(message: str, detail: dict[str, Any] | None = None) -> dict[str, Any]:
    return OutboundEvent(
        ServerEvent.ERROR.value, {"message": message, "detail": detail or {}}
    ).as_frame()


@ws_router.websocket("/ws/sync")
async def sync_socket(websocket: WebSocket, token: str | None = Query(None)) -> None:
    """Authenticate, register presence, then pump client frames until disconnect.

    A malformed frame is answered with an ``error`` frame; the connection
    stays open.
    """
    services = websocket.app.state.services
    await websocket.accept()
    try:
        connection = await services.sync.connect(
            websocket, token or websocket.headers.get("authorization")
        )
    except AuthenticationError:
        # connect() already closed the socket with a policy-violation code
        return

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json(_error_frame("Frame is not valid JSON"))
                continue
            try:
                await services.sync.handle_client_frame(connection, frame)
            except ClinicSyncError as e:
                logger.info("Rejected frame from user %s: %s", connection.user_id, e.message)
                await websocket.send_json(_error_frame(e.message, e.detail))
    except WebSocketDisconnect:
        pass
    finally:
        await services.sync.disconnect(connection.user_id, connection.connection_id)


@router.get("/status", response_model=SyncStatusResponse)
async def get_sync_status(services: ServicesDep, _identity: IdentityDep) -> SyncStatusResponse:
    """Connected and active users, recent sync events, unread notifications."""
    sync_status = await services.sync.get_sync_status()
    return SyncStatusResponse.model_validate(sync_status.to_dict())


@router.get("/users", response_model=list[OnlineUser])
async def get_online_users(
    services: ServicesDep,
    _identity: IdentityDep,
    role: Annotated[str | None, Query(description="Only users holding this role")] = None,
) -> list[OnlineUser]:
    users = []
    for state in services.registry.presences():
        if not services.registry.is_connected(state.user_id):
            continue
        if role is not None and state.role != role:
            continue
        users.append(
            OnlineUser(
                user_id=state.user_id,
                username=state.username,
                role=state.role,
                status=state.status.value,
                current_page=state.current_page,
                current_activity=state.current_activity,
                is_typing=state.is_typing,
                typing_entity_id=state.typing_entity_id,
                typing_entity_type=state.typing_entity_type,
                last_seen=state.last_seen,
            )
        )
    return users


@router.get("/events")
async def get_recent_events(
    services: ServicesDep,
    _identity: IdentityDep,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
) -> list[dict[str, Any]]:
    """Most recent broadcast sync events, oldest first."""
    return [event.to_wire() for event in services.sync.recent_sync_events(limit)]


@router.post("/events", status_code=status.HTTP_202_ACCEPTED)
async def publish_sync_event(
    services: ServicesDep,
    _identity: IdentityDep,
    event: Annotated[dict[str, Any], Body(...)],
) -> dict[str, Any]:
    """Broadcast an entity change written by another service.

    The body is a sync event (``type``, ``entityId``, ``action``, ``data``,
    ``userId``, ``username``); malformed events are rejected with 400 and
    nothing is broadcast.
    """
    published = await services.sync.broadcast_sync_event(event)
    return published.to_wire()


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup(services: ServicesDep, identity: AdminDep) -> CleanupResponse:
    """Run the stale presence and old notification sweep now."""
    result = await services.sync.cleanup_old_data()
    logger.info("Manual sync cleanup by %s: %s", identity.user_id, result.to_dict())
    return CleanupResponse.model_validate(result.to_dict())
