"""Append-only audit logging.

Sync events, user activity, notification deliveries and backup artifacts are
recorded here. Job handlers write entries inside their own transaction with
record_audit(); the sync layer uses AuditLogService, which owns its sessions.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from clinicsync.db.models import AuditLogEntry
from clinicsync.errors import BrokerUnavailable

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Top-level category of an audit entry."""

    SYSTEM = "SYSTEM"
    USER = "USER"
    NOTIFICATION = "NOTIFICATION"
    INVENTORY = "INVENTORY"
    CLAIMS = "CLAIMS"
    BACKUP = "BACKUP"


class AuditSeverity(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


async def record_audit(
    session: AsyncSession,
    *,
    event_type: AuditEventType,
    action: str,
    user_id: str | None = None,
    username: str | None = None,
    target_type: str | None = None,
    target_id: str | None = None,
    severity: AuditSeverity = AuditSeverity.MEDIUM,
    details: dict[str, Any] | None = None,
) -> AuditLogEntry:
    """Add an audit entry to the caller's session.

    The entry becomes durable when the caller commits, so it shares the fate
    of the work it describes.
    """
    entry = AuditLogEntry(
        event_type=event_type.value,
        action=action,
        user_id=user_id,
        username=username,
        target_type=target_type,
        target_id=target_id,
        severity=severity.value,
        details_json=details,
    )
    session.add(entry)
    await session.flush()
    return entry


class AuditLogService:
    """Audit sink that writes each entry in its own transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def log(
        self,
        *,
        event_type: AuditEventType,
        action: str,
        user_id: str | None = None,
        username: str | None = None,
        target_type: str | None = None,
        target_id: str | None = None,
        severity: AuditSeverity = AuditSeverity.MEDIUM,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Persist one audit entry.

        Raises:
            BrokerUnavailable: If the store cannot be written.
        """
        try:
            async with self._session_factory() as session:
                await record_audit(
                    session,
                    event_type=event_type,
                    action=action,
                    user_id=user_id,
                    username=username,
                    target_type=target_type,
                    target_id=target_id,
                    severity=severity,
                    details=details,
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.exception("Failed to write audit entry %s/%s", event_type.value, action)
            raise BrokerUnavailable("Audit store unavailable") from e

    async def list_entries(
        self,
        *,
        event_type: AuditEventType | None = None,
        action: str | None = None,
        limit: int = 100,
    ) -> Sequence[AuditLogEntry]:
        async with self._session_factory() as session:
            query = select(AuditLogEntry).order_by(AuditLogEntry.created_at.desc()).limit(limit)
            if event_type is not None:
                query = query.where(AuditLogEntry.event_type == event_type.value)
            if action is not None:
                query = query.where(AuditLogEntry.action == action)
            result = await session.execute(query)
            return result.scalars().all()
