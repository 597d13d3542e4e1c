"""Append-only audit log of sync events, job side effects and user activity."""

from __future__ import annotations

from sqlalchemy import JSON, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from clinicsync.db.models.base import Base, TimestampTZ, UUIDPrimaryKey


class AuditLogEntry(Base):
    """One audited action.

    event_type groups entries (SYSTEM, USER, BACKUP, NOTIFICATION); action is
    the specific verb, e.g. 'sync_create' or 'database_backup'.
    """

    __tablename__ = "audit_log"

    entry_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    target_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    target_id: Mapped[str | None] = mapped_column(String(500), nullable=True)
    severity: Mapped[str] = mapped_column(String(20), default="MEDIUM", nullable=False)
    details_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_audit_log_created_at", "created_at"),
        Index("ix_audit_log_event_type_action", "event_type", "action"),
        Index("ix_audit_log_target", "target_type", "target_id"),
    )
