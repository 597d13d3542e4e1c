"""Durable user presence records.

The in-memory presence registry is authoritative for live state; these rows
are its write-through copy, read by dashboards and swept by cleanup.
"""

from __future__ import annotations

from sqlalchemy import Boolean, Enum, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from clinicsync.db.models.base import Base, PresenceStatus, TimestampTZ


class UserPresence(Base):
    """Last known presence of a user (one row per user)."""

    __tablename__ = "user_presence"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(100), nullable=False)

    status: Mapped[PresenceStatus] = mapped_column(
        Enum(PresenceStatus, name="presence_status", create_constraint=True),
        nullable=False,
        default=PresenceStatus.ONLINE,
    )
    current_page: Mapped[str | None] = mapped_column(String(500), nullable=True)
    current_activity: Mapped[str | None] = mapped_column(String(500), nullable=True)

    is_typing: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    typing_entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    typing_entity_type: Mapped[str | None] = mapped_column(String(100), nullable=True)

    last_seen: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    __table_args__ = (
        Index("ix_user_presence_status", "status"),
        Index("ix_user_presence_last_seen", "last_seen"),
    )
