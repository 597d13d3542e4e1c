"""Notification dispatcher.

Resolves a target (users / roles / excludeUsers) into recipients, stores one
inbox row per recipient and pushes the notification in real time to the
recipients that are currently connected. Priority is carried to the client
as a rendering hint and never changes delivery.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError

from clinicsync.db.models import Notification, NotificationPriority, NotificationType
from clinicsync.errors import BrokerUnavailable
from clinicsync.sync.events import (
    NotificationMessage,
    NotificationTarget,
    OutboundEvent,
    ServerEvent,
    parse_notification,
    user_topic,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from clinicsync.sync.presence import PresenceRegistry
    from clinicsync.sync.pubsub import PubSub

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DispatchResult:
    """Outcome of a send_notification call."""

    recipients: set[str] = field(default_factory=set)
    delivered: set[str] = field(default_factory=set)
    notification_ids: dict[str, uuid.UUID] = field(default_factory=dict)


def notification_to_wire(row: Notification) -> dict[str, Any]:
    return {
        "id": str(row.notification_id),
        "type": row.type.value,
        "title": row.title,
        "message": row.message,
        "data": row.data_json,
        "priority": row.priority.value,
        "isRead": row.is_read,
        "timestamp": row.created_at.isoformat(),
    }


class NotificationDispatcher:
    """Targets, stores and delivers notifications."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        pubsub: PubSub,
        registry: PresenceRegistry,
    ) -> None:
        self._session_factory = session_factory
        self._pubsub = pubsub
        self._registry = registry

    def resolve_recipients(self, target: NotificationTarget) -> set[str]:
        """Explicit users plus connected users holding a target role, minus exclusions."""
        recipients = set(target.users)
        recipients |= self._registry.connected_users_with_roles(target.roles)
        recipients -= set(target.exclude_users)
        return recipients

    async def send_notification(
        self,
        notification: NotificationMessage | dict[str, Any],
        target: NotificationTarget | dict[str, Any],
    ) -> DispatchResult:
        """Store and deliver a notification to its resolved recipients.

        Args:
            notification: Type, title, message, optional data and priority.
            target: users, roles and exclude_users.

        Returns:
            Recipients, the subset reached in real time, and inbox row ids.

        Raises:
            ValidationError: If notification or target is malformed.
            BrokerUnavailable: If the inbox rows cannot be stored.
        """
        notification, target = parse_notification(notification, target)
        result = DispatchResult(recipients=self.resolve_recipients(target))
        if not result.recipients:
            logger.debug("Notification '%s' resolved to no recipients", notification.title)
            return result

        rows: dict[str, Notification] = {}
        try:
            async with self._session_factory() as session:
                for user_id in sorted(result.recipients):
                    row = Notification(
                        user_id=user_id,
                        type=NotificationType(notification.type),
                        title=notification.title,
                        message=notification.message,
                        data_json=notification.data,
                        priority=NotificationPriority(notification.priority),
                        is_read=False,
                    )
                    session.add(row)
                    rows[user_id] = row
                await session.commit()
        except SQLAlchemyError as e:
            logger.exception("Failed to store notification '%s'", notification.title)
            raise BrokerUnavailable("Notification store unavailable") from e

        for user_id, row in rows.items():
            result.notification_ids[user_id] = row.notification_id
            if not self._registry.is_connected(user_id):
                continue
            event = OutboundEvent(ServerEvent.NOTIFICATION.value, notification_to_wire(row))
            if await self._pubsub.publish(user_topic(user_id), event):
                result.delivered.add(user_id)

        logger.info(
            "Notification dispatched",
            extra={
                "notification_type": notification.type,
                "recipients": len(result.recipients),
                "delivered": len(result.delivered),
            },
        )
        return result

    async def mark_read(self, notification_id: uuid.UUID, user_id: str) -> bool:
        """Mark one of user_id's notifications read. Returns False if not found."""
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    update(Notification)
                    .where(
                        Notification.notification_id == notification_id,
                        Notification.user_id == user_id,
                    )
                    .values(is_read=True, read_at=datetime.now(UTC))
                )
                await session.commit()
                return bool(result.rowcount)
        except SQLAlchemyError as e:
            raise BrokerUnavailable("Notification store unavailable") from e

    async def mark_all_read(self, user_id: str) -> int:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    update(Notification)
                    .where(Notification.user_id == user_id, Notification.is_read.is_(False))
                    .values(is_read=True, read_at=datetime.now(UTC))
                )
                await session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise BrokerUnavailable("Notification store unavailable") from e

    async def list_for_user(
        self,
        user_id: str,
        *,
        unread_only: bool = False,
        limit: int = 50,
    ) -> Sequence[Notification]:
        """Newest-first notifications for a user."""
        try:
            async with self._session_factory() as session:
                query = (
                    select(Notification)
                    .where(Notification.user_id == user_id)
                    .order_by(Notification.created_at.desc())
                    .limit(limit)
                )
                if unread_only:
                    query = query.where(Notification.is_read.is_(False))
                result = await session.execute(query)
                return result.scalars().all()
        except SQLAlchemyError as e:
            raise BrokerUnavailable("Notification store unavailable") from e

    async def unread_count(self, user_id: str | None = None) -> int:
        """Unread notifications for one user, or across all users."""
        try:
            async with self._session_factory() as session:
                query = (
                    select(func.count())
                    .select_from(Notification)
                    .where(Notification.is_read.is_(False))
                )
                if user_id is not None:
                    query = query.where(Notification.user_id == user_id)
                result = await session.execute(query)
                return result.scalar() or 0
        except SQLAlchemyError as e:
            raise BrokerUnavailable("Notification store unavailable") from e

    async def delete_older_than(self, days: int) -> int:
        """Delete notifications created more than days ago."""
        cutoff = datetime.now(UTC) - timedelta(days=days)
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(Notification).where(Notification.created_at < cutoff)
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise BrokerUnavailable("Notification store unavailable") from e

        deleted = result.rowcount or 0
        if deleted:
            logger.info("Deleted %d notifications older than %d days", deleted, days)
        return deleted
