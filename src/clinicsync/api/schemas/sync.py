"""Schemas for the sync status and maintenance endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SyncStatusResponse(_CamelModel):
    """Point-in-time counters of the sync layer."""

    connected_users: int = Field(..., description="Users with a live connection")
    active_users: int = Field(..., description="Users whose presence is online")
    recent_sync_events: int = Field(..., description="Sync events in the recent window")
    pending_notifications: int = Field(..., description="Unread stored notifications")


class CleanupResponse(_CamelModel):
    """Outcome of a cleanup sweep."""

    notifications_deleted: int
    presence_records_cleaned: int


class OnlineUser(_CamelModel):
    """Presence of one connected user."""

    user_id: str
    username: str
    role: str
    status: str
    current_page: str | None = None
    current_activity: str | None = None
    is_typing: bool = False
    typing_entity_id: str | None = None
    typing_entity_type: str | None = None
    last_seen: datetime
