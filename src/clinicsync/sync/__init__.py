"""Real-time sync layer: event contract, pub/sub transport and presence registry."""

from clinicsync.sync.events import (
    GENERAL_TOPIC,
    ClientEvent,
    NotificationMessage,
    NotificationTarget,
    OutboundEvent,
    PresenceUpdate,
    Role,
    ServerEvent,
    SyncEvent,
    entity_topic,
    parse_sync_event,
    role_topic,
    user_topic,
)
from clinicsync.sync.presence import Connection, PresenceRegistry, PresenceState, PresenceStore
from clinicsync.sync.pubsub import Handler, InMemoryPubSub, PubSub

__all__ = [
    "GENERAL_TOPIC",
    "ClientEvent",
    "Connection",
    "Handler",
    "InMemoryPubSub",
    "NotificationMessage",
    "NotificationTarget",
    "OutboundEvent",
    "PresenceRegistry",
    "PresenceState",
    "PresenceStore",
    "PresenceUpdate",
    "PubSub",
    "Role",
    "ServerEvent",
    "SyncEvent",
    "entity_topic",
    "parse_sync_event",
    "role_topic",
    "user_topic",
]
