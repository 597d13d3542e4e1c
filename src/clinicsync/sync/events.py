"""Event contract shared by the sync bus, the notification dispatcher and clients.

SyncEvents are a tagged union keyed by ``type``; each entity kind fixes its
``entityType`` and the role rooms that receive it. Every frame on the wire is
``{"event": <name>, "data": {...}}``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from clinicsync.errors import ValidationError

SyncAction = Literal["create", "update", "delete"]

GENERAL_TOPIC = "general"


class Role(str, Enum):
    """Staff roles known to the sync layer.

    Tokens may carry other roles; they still get a role room, they are just
    not targeted by any built-in routing.
    """

    ADMIN = "ADMIN"
    CLINICAL_OFFICER = "CLINICAL_OFFICER"
    NURSE = "NURSE"
    PHARMACIST = "PHARMACIST"
    RECEPTIONIST = "RECEPTIONIST"
    CASHIER = "CASHIER"
    CLAIMS_MANAGER = "CLAIMS_MANAGER"
    LAB_TECHNICIAN = "LAB_TECHNICIAN"
    INVENTORY_MANAGER = "INVENTORY_MANAGER"


class ServerEvent(str, Enum):
    """Event names sent from the server to clients."""

    CONNECTED = "connected"
    SYNC_EVENT = "sync_event"
    NOTIFICATION = "notification"
    PRESENCE_UPDATE = "presence_update"
    USER_OFFLINE = "user_offline"
    USER_DISCONNECTED = "user_disconnected"
    USER_TYPING = "user_typing"
    USER_ACTIVITY = "user_activity"
    ENTITY_EDIT_START = "entity_edit_start"
    ENTITY_EDIT_STOP = "entity_edit_stop"
    ERROR = "error"


class ClientEvent(str, Enum):
    """Event names accepted from clients."""

    USER_ACTIVITY = "user_activity"
    PRESENCE_UPDATE = "presence_update"
    TYPING_START = "typing_start"
    TYPING_STOP = "typing_stop"
    ENTITY_EDIT_START = "entity_edit_start"
    ENTITY_EDIT_STOP = "entity_edit_stop"


def user_topic(user_id: str) -> str:
    return f"user:{user_id}"


def role_topic(role: str) -> str:
    return f"role:{role}"


def entity_topic(entity_type: str, entity_id: str) -> str:
    return f"entity:{entity_type}:{entity_id}"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class OutboundEvent:
    """A named server event ready for fan-out."""

    event: str
    data: dict[str, Any] = field(default_factory=dict)

    def as_frame(self) -> dict[str, Any]:
        return {"event": self.event, "data": self.data}


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="forbid",
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# =============================================================================
# Sync events
# =============================================================================


class _SyncEventBase(_WireModel):
    """Fields shared by every sync event variant."""

    relevant_roles: ClassVar[tuple[Role, ...]] = ()

    id: str = Field(default_factory=lambda: f"sync_{uuid.uuid4().hex}")
    entity_id: str = Field(min_length=1)
    action: SyncAction
    data: dict[str, Any] = Field(default_factory=dict)
    user_id: str = Field(min_length=1)
    username: str
    timestamp: datetime = Field(default_factory=_utcnow)

    @property
    def topics(self) -> list[str]:
        """Entity room plus the role rooms this kind of entity is visible to."""
        entity_type: str = self.entity_type  # type: ignore[attr-defined]
        topics = [entity_topic(entity_type, self.entity_id)]
        topics.extend(role_topic(role.value) for role in self.relevant_roles)
        return topics


class PatientSyncEvent(_SyncEventBase):
    relevant_roles: ClassVar[tuple[Role, ...]] = (
        Role.ADMIN,
        Role.CLINICAL_OFFICER,
        Role.NURSE,
        Role.RECEPTIONIST,
    )

    type: Literal["patient_update"] = "patient_update"
    entity_type: Literal["patient"] = "patient"


class AssignmentSyncEvent(_SyncEventBase):
    relevant_roles: ClassVar[tuple[Role, ...]] = (
        Role.ADMIN,
        Role.CLINICAL_OFFICER,
        Role.NURSE,
    )

    type: Literal["assignment_update"] = "assignment_update"
    entity_type: Literal["patient_assignment"] = "patient_assignment"


class PrescriptionSyncEvent(_SyncEventBase):
    relevant_roles: ClassVar[tuple[Role, ...]] = (
        Role.ADMIN,
        Role.PHARMACIST,
        Role.CLINICAL_OFFICER,
    )

    type: Literal["prescription_update"] = "prescription_update"
    entity_type: Literal["prescription"] = "prescription"


class LabResultSyncEvent(_SyncEventBase):
    relevant_roles: ClassVar[tuple[Role, ...]] = (
        Role.ADMIN,
        Role.CLINICAL_OFFICER,
        Role.NURSE,
        Role.LAB_TECHNICIAN,
    )

    type: Literal["lab_update"] = "lab_update"
    entity_type: Literal["lab_result"] = "lab_result"


class VisitSyncEvent(_SyncEventBase):
    relevant_roles: ClassVar[tuple[Role, ...]] = (
        Role.ADMIN,
        Role.CLINICAL_OFFICER,
        Role.NURSE,
        Role.RECEPTIONIST,
    )

    type: Literal["visit_update"] = "visit_update"
    entity_type: Literal["visit"] = "visit"


class PaymentSyncEvent(_SyncEventBase):
    relevant_roles: ClassVar[tuple[Role, ...]] = (
        Role.ADMIN,
        Role.CASHIER,
        Role.CLAIMS_MANAGER,
    )

    type: Literal["payment_update"] = "payment_update"
    entity_type: Literal["payment"] = "payment"


class UserSyncEvent(_SyncEventBase):
    relevant_roles: ClassVar[tuple[Role, ...]] = (Role.ADMIN,)

    type: Literal["user_update"] = "user_update"
    entity_type: Literal["user"] = "user"


SyncEvent = Annotated[
    PatientSyncEvent
    | AssignmentSyncEvent
    | PrescriptionSyncEvent
    | LabResultSyncEvent
    | VisitSyncEvent
    | PaymentSyncEvent
    | UserSyncEvent,
    Field(discriminator="type"),
]

_sync_event_adapter: TypeAdapter[SyncEvent] = TypeAdapter(SyncEvent)


def parse_sync_event(raw: SyncEvent | dict[str, Any]) -> SyncEvent:
    """Validate a raw mapping into the matching SyncEvent variant.

    Raises:
        ValidationError: If the payload does not match any variant.
    """
    if isinstance(raw, _SyncEventBase):
        return raw
    try:
        return _sync_event_adapter.validate_python(raw)
    except PydanticValidationError as e:
        errors = e.errors(include_url=False, include_context=False)
        raise ValidationError("Malformed sync event", {"errors": errors}) from e


# =============================================================================
# Notifications
# =============================================================================

NotificationKind = Literal[
    "patient_assignment",
    "prescription_update",
    "lab_result",
    "payment_received",
    "visit_update",
    "system_alert",
    "sync_event",
]

NotificationPriorityName = Literal["low", "medium", "high", "urgent"]


class NotificationMessage(_WireModel):
    """Content of a notification, independent of who receives it."""

    type: NotificationKind
    title: str = Field(min_length=1, max_length=255)
    message: str = Field(min_length=1)
    data: dict[str, Any] | None = None
    priority: NotificationPriorityName = "medium"


class NotificationTarget(_WireModel):
    """Recipients: explicit users, plus connected users holding a role, minus exclusions.

    A target that only excludes users is valid and resolves to nobody. A
    target with none of the three lists set is rejected.
    """

    users: list[str] = Field(default_factory=list)
    roles: list[str] = Field(default_factory=list)
    exclude_users: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_not_empty(self) -> NotificationTarget:
        if not (self.users or self.roles or self.exclude_users):
            msg = "Notification target needs users, roles or excludeUsers"
            raise ValueError(msg)
        return self


def parse_notification(
    notification: NotificationMessage | dict[str, Any],
    target: NotificationTarget | dict[str, Any],
) -> tuple[NotificationMessage, NotificationTarget]:
    """Validate a notification and its target.

    Raises:
        ValidationError: If either payload is malformed.
    """
    try:
        if not isinstance(notification, NotificationMessage):
            notification = NotificationMessage.model_validate(notification)
        if not isinstance(target, NotificationTarget):
            target = NotificationTarget.model_validate(target)
    except PydanticValidationError as e:
        errors = e.errors(include_url=False, include_context=False)
        raise ValidationError("Malformed notification", {"errors": errors}) from e
    return notification, target


# =============================================================================
# Presence
# =============================================================================


class PresenceUpdate(BaseModel):
    """Partial presence update; only fields that were set are merged."""

    model_config = ConfigDict(extra="forbid")

    status: Literal["online", "away", "busy", "offline"] | None = None
    current_page: str | None = None
    current_activity: str | None = None
    is_typing: bool | None = None
    typing_entity_id: str | None = None
    typing_entity_type: str | None = None

    @model_validator(mode="after")
    def check_typing_target(self) -> PresenceUpdate:
        if self.is_typing and not (self.typing_entity_id and self.typing_entity_type):
            msg = "is_typing requires typing_entity_id and typing_entity_type"
            raise ValueError(msg)
        return self

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


def parse_presence_update(raw: PresenceUpdate | dict[str, Any]) -> PresenceUpdate:
    """Validate a partial presence payload.

    Raises:
        ValidationError: If the payload has unknown fields or bad values.
    """
    if isinstance(raw, PresenceUpdate):
        return raw
    try:
        return PresenceUpdate.model_validate(raw)
    except PydanticValidationError as e:
        errors = e.errors(include_url=False, include_context=False)
        raise ValidationError("Malformed presence update", {"errors": errors}) from e
