"""Schemas for the notification inbox endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class NotificationResponse(_CamelModel):
    """One stored notification, as shown in a user's inbox."""

    id: str
    type: str
    title: str
    message: str
    data: dict[str, Any] | None = None
    priority: str
    is_read: bool
    timestamp: datetime


class NotificationListResponse(_CamelModel):
    notifications: list[NotificationResponse]
    unread_count: int


class SendNotificationRequest(_CamelModel):
    """Notification content plus its target.

    ``target`` accepts ``users``, ``roles`` and ``excludeUsers``; at least
    one of them must be non-empty. Exclusions alone resolve to nobody.
    """

    notification: dict[str, Any]
    target: dict[str, Any]


class SendNotificationResponse(_CamelModel):
    recipients: list[str]
    delivered: list[str]
    notification_ids: dict[str, str] = Field(default_factory=dict)


class MarkReadResponse(_CamelModel):
    updated: int
