"""Presence and sync event bus.

SyncService is constructed explicitly by the application entry point with its
collaborators (pub/sub transport, presence registry, token verifier,
notification dispatcher, audit sink) and owns their runtime lifecycle:
start() launches the periodic cleanup sweep, shutdown() stops it, drains
pending deliveries and closes the transport.

Topics:
    user:<id>               one per connected user
    role:<role>             every connected user holding role
    general                 every connected user
    entity:<type>:<id>      users editing or watching an entity
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol

from clinicsync.errors import AuthenticationError, BrokerUnavailable, ClinicSyncError, ValidationError
from clinicsync.services.audit import AuditEventType, AuditSeverity
from clinicsync.sync.events import (
    GENERAL_TOPIC,
    AssignmentSyncEvent,
    ClientEvent,
    LabResultSyncEvent,
    OutboundEvent,
    PaymentSyncEvent,
    PrescriptionSyncEvent,
    Role,
    ServerEvent,
    SyncAction,
    SyncEvent,
    UserSyncEvent,
    VisitSyncEvent,
    entity_topic,
    parse_presence_update,
    parse_sync_event,
    role_topic,
    user_topic,
)
from clinicsync.sync.presence import Connection, PresenceState

if TYPE_CHECKING:
    from clinicsync.core.config import SyncSettings
    from clinicsync.services.audit import AuditLogService
    from clinicsync.services.auth import TokenVerifier
    from clinicsync.services.notifications import NotificationDispatcher
    from clinicsync.sync.events import PresenceUpdate
    from clinicsync.sync.presence import PresenceRegistry, PresenceStore
    from clinicsync.sync.pubsub import PubSub

logger = logging.getLogger(__name__)

# Close code sent when a connection fails authentication (policy violation)
WS_POLICY_VIOLATION = 1008


class SyncTransport(Protocol):
    """The one persistent connection to a client (e.g. a FastAPI WebSocket)."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


@dataclass(frozen=True, slots=True)
class SyncStatus:
    connected_users: int
    active_users: int
    recent_sync_events: int
    pending_notifications: int

    def to_dict(self) -> dict[str, int]:
        return {
            "connectedUsers": self.connected_users,
            "activeUsers": self.active_users,
            "recentSyncEvents": self.recent_sync_events,
            "pendingNotifications": self.pending_notifications,
        }


@dataclass(frozen=True, slots=True)
class CleanupResult:
    notifications_deleted: int
    presence_records_cleaned: int
    sync_events_purged: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "notificationsDeleted": self.notifications_deleted,
            "presenceRecordsCleaned": self.presence_records_cleaned,
        }


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _presence_payload(state: PresenceState, changes: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "userId": state.user_id,
        "username": state.username,
        "role": state.role,
        "status": state.status.value,
    }
    payload.update(changes if changes is not None else state.to_dict())
    payload["userId"] = state.user_id
    payload["timestamp"] = _utcnow().isoformat()
    return payload


class SyncService:
    """Real-time presence tracking and entity change fan-out."""

    def __init__(
        self,
        *,
        pubsub: PubSub,
        registry: PresenceRegistry,
        verifier: TokenVerifier,
        notifications: NotificationDispatcher,
        settings: SyncSettings,
        audit: AuditLogService | None = None,
        presence_store: PresenceStore | None = None,
    ) -> None:
        self._pubsub = pubsub
        self._registry = registry
        self._verifier = verifier
        self._notifications = notifications
        self._settings = settings
        self._audit = audit
        self._presence_store = presence_store
        self._recent_events: deque[SyncEvent] = deque(maxlen=settings.sync_event_buffer_size)
        self._cleanup_task: asyncio.Task | None = None

    @property
    def registry(self) -> PresenceRegistry:
        return self._registry

    @property
    def notifications(self) -> NotificationDispatcher:
        return self._notifications

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the periodic cleanup sweep."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="sync-cleanup")
            logger.info(
                "Sync service started (cleanup every %.0fs)",
                self._settings.cleanup_interval_seconds,
            )

    async def shutdown(self) -> None:
        """Stop the sweep, drain in-flight deliveries and close the transport."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        await self._pubsub.close()
        logger.info("Sync service stopped")

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.cleanup_interval_seconds)
            try:
                result = await self.cleanup_old_data()
                logger.info("Periodic cleanup: %s", result.to_dict())
            except ClinicSyncError as e:
                logger.warning("Periodic cleanup failed: %s", e.message)

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    async def connect(self, transport: SyncTransport, auth_token: str | None) -> Connection:
        """Authenticate a transport and register it as the user's live connection.

        The caller receives ``connected``; everyone else receives
        ``presence_update``. A previous connection of the same user is
        superseded and stops receiving events.

        Raises:
            AuthenticationError: If the token is invalid; the transport is closed.
        """
        try:
            identity = self._verifier.verify(auth_token)
        except AuthenticationError as e:
            await transport.close(code=WS_POLICY_VIOLATION, reason=e.message)
            raise

        async def deliver(event: OutboundEvent) -> None:
            await transport.send_json(event.as_frame())

        connection = Connection(
            connection_id=uuid.uuid4().hex,
            user_id=identity.user_id,
            username=identity.username,
            role=identity.role,
            handler=deliver,
        )
        previous, state = await self._registry.register(connection)
        if previous is not None:
            await self._pubsub.unsubscribe_all(previous.handler)
            logger.info(
                "Connection %s of user %s superseded by %s",
                previous.connection_id,
                identity.user_id,
                connection.connection_id,
            )

        for topic in (user_topic(identity.user_id), role_topic(identity.role), GENERAL_TOPIC):
            await self._pubsub.subscribe(topic, deliver)

        await self._pubsub.publish(
            user_topic(identity.user_id),
            OutboundEvent(
                ServerEvent.CONNECTED.value,
                {
                    "message": "Successfully connected to real-time sync",
                    "userId": identity.user_id,
                    "username": identity.username,
                    "role": identity.role,
                    "connectedUsers": self._registry.connected_count(),
                },
            ),
        )
        await self._pubsub.publish(
            GENERAL_TOPIC,
            OutboundEvent(ServerEvent.PRESENCE_UPDATE.value, _presence_payload(state)),
            exclude=(deliver,),
        )
        await self._persist_presence(state)

        logger.info(
            "User %s (%s) connected",
            identity.username,
            identity.user_id,
            extra={"connection_id": connection.connection_id, "role": identity.role},
        )
        return connection

    async def disconnect(self, user_id: str, connection_id: str | None = None) -> bool:
        """Remove a user's connection and tell everyone else.

        Returns:
            False if the user was not connected or the disconnect was stale.
        """
        removed = await self._registry.unregister(user_id, connection_id)
        if removed is None:
            return False
        connection, state = removed

        await self._pubsub.unsubscribe_all(connection.handler)
        await self._pubsub.publish(
            GENERAL_TOPIC,
            OutboundEvent(
                ServerEvent.USER_DISCONNECTED.value,
                {
                    "userId": user_id,
                    "username": connection.username,
                    "timestamp": _utcnow().isoformat(),
                },
            ),
        )
        await self._persist_presence(state)

        logger.info("User %s (%s) disconnected", connection.username, user_id)
        return True

    # -------------------------------------------------------------------------
    # Presence
    # -------------------------------------------------------------------------

    async def update_presence(
        self, user_id: str, partial: PresenceUpdate | dict[str, Any]
    ) -> PresenceState:
        """Merge partial presence fields and broadcast ``presence_update``.

        Raises:
            ValidationError: If partial has unknown fields or bad values.
        """
        update = parse_presence_update(partial)
        changes = update.changes()
        state = await self._registry.merge(user_id, changes)

        await self._pubsub.publish(
            GENERAL_TOPIC,
            OutboundEvent(ServerEvent.PRESENCE_UPDATE.value, _presence_payload(state, changes)),
        )
        if changes.get("is_typing") is not None:
            entity_type = changes.get("typing_entity_type") or state.typing_entity_type
            entity_id = changes.get("typing_entity_id") or state.typing_entity_id
            if entity_type and entity_id:
                await self._emit_typing(state, entity_type, entity_id, bool(changes["is_typing"]))
        await self._persist_presence(state)
        return state

    async def start_typing(self, user_id: str, entity_type: str, entity_id: str) -> PresenceState:
        """Declare user_id typing on an entity; repeating it overwrites in place."""
        state = await self._registry.merge(
            user_id,
            {"is_typing": True, "typing_entity_type": entity_type, "typing_entity_id": entity_id},
        )
        await self._emit_typing(state, entity_type, entity_id, True)
        await self._persist_presence(state)
        return state

    async def stop_typing(self, user_id: str, entity_type: str, entity_id: str) -> PresenceState:
        state = await self._registry.merge(user_id, {"is_typing": False})
        await self._emit_typing(state, entity_type, entity_id, False)
        await self._persist_presence(state)
        return state

    async def start_editing(self, user_id: str, entity_type: str, entity_id: str) -> None:
        """Join the entity room and tell its other members editing started."""
        room = entity_topic(entity_type, entity_id)
        connection = self._registry.get_connection(user_id)
        if connection is None:
            return
        await self._pubsub.publish(
            room,
            OutboundEvent(
                ServerEvent.ENTITY_EDIT_START.value,
                self._entity_payload(connection, entity_type, entity_id),
            ),
            exclude=(connection.handler,),
        )
        await self._registry.join_room(user_id, room)
        await self._pubsub.subscribe(room, connection.handler)

    async def stop_editing(self, user_id: str, entity_type: str, entity_id: str) -> None:
        """Leave the entity room and tell its other members editing stopped."""
        room = entity_topic(entity_type, entity_id)
        connection = self._registry.get_connection(user_id)
        if connection is None:
            return
        await self._pubsub.publish(
            room,
            OutboundEvent(
                ServerEvent.ENTITY_EDIT_STOP.value,
                self._entity_payload(connection, entity_type, entity_id),
            ),
            exclude=(connection.handler,),
        )
        await self._registry.leave_room(user_id, room)
        await self._pubsub.unsubscribe(room, connection.handler)

    async def record_activity(
        self, user_id: str, activity: str | None, page: str | None
    ) -> PresenceState:
        """Record what a user is doing and share it with their role room."""
        state = await self._registry.merge(
            user_id, {"current_activity": activity, "current_page": page}
        )
        connection = self._registry.get_connection(user_id)
        await self._pubsub.publish(
            role_topic(state.role),
            OutboundEvent(
                ServerEvent.USER_ACTIVITY.value,
                {
                    "userId": user_id,
                    "username": state.username,
                    "activity": activity,
                    "page": page,
                    "timestamp": _utcnow().isoformat(),
                },
            ),
            exclude=(connection.handler,) if connection else (),
        )
        await self._persist_presence(state)
        if self._audit is not None:
            await self._audit.log(
                event_type=AuditEventType.USER,
                action="user_activity",
                user_id=user_id,
                username=state.username,
                target_type="activity",
                target_id=page,
                severity=AuditSeverity.LOW,
                details={"activity": activity, "page": page},
            )
        return state

    async def handle_client_frame(self, connection: Connection, frame: dict[str, Any]) -> None:
        """Dispatch one inbound ``{"event", "data"}`` frame from a client.

        Raises:
            ValidationError: If the frame or its payload is malformed.
        """
        if not isinstance(frame, dict):
            raise ValidationError("Frame must be an object")
        event = frame.get("event")
        data = frame.get("data") or {}
        if not isinstance(data, dict):
            raise ValidationError("Frame data must be an object")

        try:
            name = ClientEvent(event)
        except ValueError as e:
            raise ValidationError(f"Unknown client event: {event!r}") from e

        user_id = connection.user_id
        if name is ClientEvent.USER_ACTIVITY:
            await self.record_activity(user_id, data.get("activity"), data.get("page"))
        elif name is ClientEvent.PRESENCE_UPDATE:
            await self.update_presence(user_id, data)
        else:
            entity_type = data.get("entityType")
            entity_id = data.get("entityId")
            if not entity_type or not entity_id:
                raise ValidationError(f"{name.value} requires entityType and entityId")
            if name is ClientEvent.TYPING_START:
                await self.start_typing(user_id, entity_type, str(entity_id))
            elif name is ClientEvent.TYPING_STOP:
                await self.stop_typing(user_id, entity_type, str(entity_id))
            elif name is ClientEvent.ENTITY_EDIT_START:
                await self.start_editing(user_id, entity_type, str(entity_id))
            else:
                await self.stop_editing(user_id, entity_type, str(entity_id))

    # -------------------------------------------------------------------------
    # Sync events
    # -------------------------------------------------------------------------

    async def broadcast_sync_event(self, event: SyncEvent | dict[str, Any]) -> SyncEvent:
        """Fan an entity change out to its entity room and relevant role rooms.

        Each subscriber receives the event once, in call order. Disconnected
        clients miss it; there is no replay.

        Raises:
            ValidationError: If event is malformed; nothing is broadcast.
            BrokerUnavailable: If the transport or audit sink is unreachable.
        """
        event = parse_sync_event(event)
        self._recent_events.append(event)
        await self._pubsub.publish(
            event.topics,
            OutboundEvent(ServerEvent.SYNC_EVENT.value, event.to_wire()),
        )

        if self._audit is not None:
            await self._audit.log(
                event_type=AuditEventType.SYSTEM,
                action=f"sync_{event.action}",
                user_id=event.user_id,
                username=event.username,
                target_type=event.entity_type,
                target_id=event.entity_id,
                details=event.to_wire(),
            )
        return event

    async def sync_patient_assignment(
        self, assignment: dict[str, Any], action: SyncAction, user_id: str, username: str
    ) -> SyncEvent:
        event = await self.broadcast_sync_event(
            AssignmentSyncEvent(
                entity_id=str(assignment["id"]),
                action=action,
                data=assignment,
                user_id=user_id,
                username=username,
            )
        )
        assignee = assignment.get("assigned_to_user_id")
        if action == "create" and assignee and str(assignee) != user_id:
            await self._notifications.send_notification(
                {
                    "type": "patient_assignment",
                    "title": "New Patient Assignment",
                    "message": f"You have been assigned to patient: "
                    f"{assignment.get('patient_name') or 'Unknown'}",
                    "data": assignment,
                    "priority": "urgent" if assignment.get("priority") == "URGENT" else "medium",
                },
                {"users": [str(assignee)]},
            )
        return event

    async def sync_prescription(
        self, prescription: dict[str, Any], action: SyncAction, user_id: str, username: str
    ) -> SyncEvent:
        event = await self.broadcast_sync_event(
            PrescriptionSyncEvent(
                entity_id=str(prescription["id"]),
                action=action,
                data=prescription,
                user_id=user_id,
                username=username,
            )
        )
        if action in ("create", "update"):
            verb = "created" if action == "create" else "updated"
            await self._notifications.send_notification(
                {
                    "type": "prescription_update",
                    "title": f"Prescription {verb.capitalize()}",
                    "message": f"Prescription for patient "
                    f"{prescription.get('patient_name') or 'Unknown'} has been {verb}",
                    "data": prescription,
                },
                {"roles": [Role.PHARMACIST.value, Role.CLINICAL_OFFICER.value]},
            )
        return event

    async def sync_lab_result(
        self, lab_result: dict[str, Any], action: SyncAction, user_id: str, username: str
    ) -> SyncEvent:
        event = await self.broadcast_sync_event(
            LabResultSyncEvent(
                entity_id=str(lab_result["id"]),
                action=action,
                data=lab_result,
                user_id=user_id,
                username=username,
            )
        )
        if action in ("create", "update"):
            created = action == "create"
            await self._notifications.send_notification(
                {
                    "type": "lab_result",
                    "title": f"Lab Result {'Available' if created else 'Updated'}",
                    "message": f"Lab results for patient "
                    f"{lab_result.get('patient_name') or 'Unknown'} are "
                    f"{'available' if created else 'updated'}",
                    "data": lab_result,
                    "priority": "urgent" if lab_result.get("urgency") == "URGENT" else "medium",
                },
                {"roles": [Role.CLINICAL_OFFICER.value, Role.NURSE.value]},
            )
        return event

    async def sync_visit(
        self, visit: dict[str, Any], action: SyncAction, user_id: str, username: str
    ) -> SyncEvent:
        event = await self.broadcast_sync_event(
            VisitSyncEvent(
                entity_id=str(visit["id"]),
                action=action,
                data=visit,
                user_id=user_id,
                username=username,
            )
        )
        if action in ("create", "update"):
            verb = "scheduled" if action == "create" else "updated"
            await self._notifications.send_notification(
                {
                    "type": "visit_update",
                    "title": f"Visit {verb.capitalize()}",
                    "message": f"Visit for patient "
                    f"{visit.get('patient_name') or 'Unknown'} has been {verb}",
                    "data": visit,
                },
                {
                    "roles": [
                        Role.CLINICAL_OFFICER.value,
                        Role.NURSE.value,
                        Role.RECEPTIONIST.value,
                    ]
                },
            )
        return event

    async def sync_payment(
        self, payment: dict[str, Any], action: SyncAction, user_id: str, username: str
    ) -> SyncEvent:
        event = await self.broadcast_sync_event(
            PaymentSyncEvent(
                entity_id=str(payment["id"]),
                action=action,
                data=payment,
                user_id=user_id,
                username=username,
            )
        )
        if action == "create":
            await self._notifications.send_notification(
                {
                    "type": "payment_received",
                    "title": "Payment Received",
                    "message": f"Payment of {payment.get('amount')} has been received for "
                    f"invoice {payment.get('invoice_number') or 'Unknown'}",
                    "data": payment,
                },
                {"roles": [Role.ADMIN.value, Role.CASHIER.value, Role.CLAIMS_MANAGER.value]},
            )
        return event

    async def sync_user_update(
        self, user: dict[str, Any], action: SyncAction, user_id: str, username: str
    ) -> SyncEvent:
        event = await self.broadcast_sync_event(
            UserSyncEvent(
                entity_id=str(user["id"]),
                action=action,
                data=user,
                user_id=user_id,
                username=username,
            )
        )
        if action in ("create", "update"):
            verb = "created" if action == "create" else "updated"
            await self._notifications.send_notification(
                {
                    "type": "system_alert",
                    "title": f"User {verb.capitalize()}",
                    "message": f"User {user.get('username')} has been {verb}",
                    "data": user,
                    "priority": "low",
                },
                {"roles": [Role.ADMIN.value]},
            )
        return event

    def recent_sync_events(self, limit: int | None = None) -> list[SyncEvent]:
        """Newest-last snapshot of the sync event ring buffer."""
        events = list(self._recent_events)
        return events[-limit:] if limit else events

    # -------------------------------------------------------------------------
    # Status & maintenance
    # -------------------------------------------------------------------------

    async def get_sync_status(self) -> SyncStatus:
        """Point-in-time counters for operational dashboards."""
        window = timedelta(minutes=self._settings.recent_events_window_minutes)
        cutoff = _utcnow() - window
        return SyncStatus(
            connected_users=self._registry.connected_count(),
            active_users=self._registry.active_count(),
            recent_sync_events=sum(1 for e in self._recent_events if e.timestamp >= cutoff),
            pending_notifications=await self._notifications.unread_count(),
        )

    async def cleanup_old_data(self) -> CleanupResult:
        """Sweep stale presences, old notifications and old buffered sync events."""
        notifications_deleted = await self._notifications.delete_older_than(
            self._settings.notification_retention_days
        )

        threshold = timedelta(minutes=self._settings.presence_stale_minutes)
        swept = await self._registry.sweep_stale(threshold)
        presence_cleaned = len(swept)
        if self._presence_store is not None:
            presence_cleaned = await self._presence_store.mark_stale_offline(_utcnow() - threshold)

        for state in swept:
            await self._pubsub.publish(
                GENERAL_TOPIC,
                OutboundEvent(
                    ServerEvent.USER_OFFLINE.value,
                    {
                        "userId": state.user_id,
                        "username": state.username,
                        "timestamp": _utcnow().isoformat(),
                    },
                ),
            )

        purged = self._purge_old_events()
        result = CleanupResult(
            notifications_deleted=notifications_deleted,
            presence_records_cleaned=presence_cleaned,
            sync_events_purged=purged,
        )
        logger.info("Sync cleanup finished", extra=result.to_dict())
        return result

    def _purge_old_events(self) -> int:
        cutoff = _utcnow() - timedelta(minutes=self._settings.recent_events_window_minutes)
        purged = 0
        while self._recent_events and self._recent_events[0].timestamp < cutoff:
            self._recent_events.popleft()
            purged += 1
        return purged

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _emit_typing(
        self, state: PresenceState, entity_type: str, entity_id: str, is_typing: bool
    ) -> None:
        connection = self._registry.get_connection(state.user_id)
        await self._pubsub.publish(
            entity_topic(entity_type, entity_id),
            OutboundEvent(
                ServerEvent.USER_TYPING.value,
                {
                    "userId": state.user_id,
                    "username": state.username,
                    "entityId": entity_id,
                    "entityType": entity_type,
                    "isTyping": is_typing,
                },
            ),
            exclude=(connection.handler,) if connection else (),
        )

    @staticmethod
    def _entity_payload(connection: Connection, entity_type: str, entity_id: str) -> dict[str, Any]:
        return {
            "userId": connection.user_id,
            "username": connection.username,
            "entityId": entity_id,
            "entityType": entity_type,
            "timestamp": _utcnow().isoformat(),
        }

    async def _persist_presence(self, state: PresenceState) -> None:
        if self._presence_store is None:
            return
        try:
            await self._presence_store.save(state)
        except BrokerUnavailable:
            # The in-memory registry stays authoritative for live state
            logger.warning("Presence for user %s not persisted", state.user_id)
