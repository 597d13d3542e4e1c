"""Notification inbox rows, one per resolved recipient."""

from __future__ import annotations

from sqlalchemy import JSON, Boolean, Enum, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from clinicsync.db.models.base import (
    Base,
    NotificationPriority,
    NotificationType,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
)


class Notification(Base):
    """A notification addressed to a single user."""

    __tablename__ = "notifications"

    notification_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[NotificationType] = mapped_column(
        Enum(NotificationType, name="notification_type", create_constraint=True),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    priority: Mapped[NotificationPriority] = mapped_column(
        Enum(NotificationPriority, name="notification_priority", create_constraint=True),
        nullable=False,
        default=NotificationPriority.MEDIUM,
    )

    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[OptionalTimestampTZ]

    __table_args__ = (
        Index("ix_notifications_user_unread", "user_id", "is_read"),
        Index("ix_notifications_created_at", "created_at"),
    )
