"""Presence/session registry.

Live connection and presence state lives in memory and is only ever changed
through keyed merge operations under a single asyncio lock, so concurrent
connection handlers never lose each other's updates. PresenceStore keeps a
write-through copy in the relational store for dashboards and cleanup.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from clinicsync.db.models import PresenceStatus, UserPresence
from clinicsync.errors import BrokerUnavailable, ValidationError
from clinicsync.sync.events import entity_topic

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from clinicsync.sync.pubsub import Handler

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class Connection:
    """One authenticated, live client connection."""

    connection_id: str
    user_id: str
    username: str
    role: str
    handler: Handler
    connected_at: datetime = field(default_factory=_utcnow)
    rooms: set[str] = field(default_factory=set)

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "username": self.username,
            "role": self.role,
            "connectedAt": self.connected_at.isoformat(),
        }


@dataclass(slots=True)
class PresenceState:
    """Last known presence of a user."""

    user_id: str
    username: str
    role: str
    status: PresenceStatus = PresenceStatus.ONLINE
    current_page: str | None = None
    current_activity: str | None = None
    is_typing: bool = False
    typing_entity_id: str | None = None
    typing_entity_type: str | None = None
    last_seen: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "username": self.username,
            "role": self.role,
            "status": self.status.value,
            "current_page": self.current_page,
            "current_activity": self.current_activity,
            "is_typing": self.is_typing,
            "typing_entity_id": self.typing_entity_id,
            "typing_entity_type": self.typing_entity_type,
            "last_seen": self.last_seen.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class TypingEntry:
    user_id: str
    username: str
    entity_type: str
    entity_id: str
    started_at: datetime


class PresenceRegistry:
    """Process-wide registry of connections, presences and typing indicators."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._connections: dict[str, Connection] = {}
        self._presence: dict[str, PresenceState] = {}
        # room -> user_id -> entry; one entry per user per room
        self._typing: dict[str, dict[str, TypingEntry]] = {}

    async def register(self, connection: Connection) -> tuple[Connection | None, PresenceState]:
        """Register a connection and mark its user online.

        Returns:
            The connection it superseded (if any) and the new presence state.
        """
        async with self._lock:
            previous = self._connections.get(connection.user_id)
            self._connections[connection.user_id] = connection
            state = self._presence.get(connection.user_id)
            now = _utcnow()
            if state is None:
                state = PresenceState(
                    user_id=connection.user_id,
                    username=connection.username,
                    role=connection.role,
                    last_seen=now,
                )
                self._presence[connection.user_id] = state
            else:
                state.username = connection.username
                state.role = connection.role
                state.status = PresenceStatus.ONLINE
                state.last_seen = now
            return previous, replace(state)

    async def unregister(
        self, user_id: str, connection_id: str | None = None
    ) -> tuple[Connection, PresenceState] | None:
        """Remove a user's connection and mark them offline.

        A disconnect carrying a connection_id that no longer matches the
        registered connection is stale (the user reconnected) and is ignored.

        Returns:
            The removed connection and resulting presence, or None if nothing changed.
        """
        async with self._lock:
            current = self._connections.get(user_id)
            if current is None:
                return None
            if connection_id is not None and current.connection_id != connection_id:
                logger.debug(
                    "Ignoring stale disconnect for user %s (connection %s)",
                    user_id,
                    connection_id,
                )
                return None
            del self._connections[user_id]
            self._clear_typing(user_id)
            state = self._presence[user_id]
            state.status = PresenceStatus.OFFLINE
            state.is_typing = False
            state.typing_entity_id = None
            state.typing_entity_type = None
            state.last_seen = _utcnow()
            return current, replace(state)

    async def merge(self, user_id: str, changes: dict[str, Any]) -> PresenceState:
        """Merge partial presence fields into a user's record.

        Typing fields are applied to the typing index as an upsert keyed by
        (room, user_id), so repeating the same typing state is a no-op.

        Raises:
            ValidationError: If user_id has never connected.
        """
        async with self._lock:
            state = self._presence.get(user_id)
            if state is None:
                raise ValidationError(f"No presence for user {user_id}", {"userId": user_id})

            if changes.get("status") is not None:
                state.status = PresenceStatus(changes["status"])
            for name in ("current_page", "current_activity"):
                if name in changes:
                    setattr(state, name, changes[name])

            if changes.get("is_typing") is not None:
                self._apply_typing(state, changes)

            # Activity on a live connection brings a swept user back online
            if (
                changes.get("status") is None
                and state.status == PresenceStatus.OFFLINE
                and user_id in self._connections
            ):
                state.status = PresenceStatus.ONLINE

            state.last_seen = _utcnow()
            return replace(state)

    async def join_room(self, user_id: str, room: str) -> bool:
        async with self._lock:
            connection = self._connections.get(user_id)
            if connection is None:
                return False
            connection.rooms.add(room)
            return True

    async def leave_room(self, user_id: str, room: str) -> bool:
        async with self._lock:
            connection = self._connections.get(user_id)
            if connection is None or room not in connection.rooms:
                return False
            connection.rooms.discard(room)
            return True

    async def sweep_stale(self, threshold: timedelta, now: datetime | None = None) -> list[PresenceState]:
        """Mark presences not seen within threshold as offline.

        Returns:
            The presences that were swept.
        """
        cutoff = (now or _utcnow()) - threshold
        swept: list[PresenceState] = []
        async with self._lock:
            for state in self._presence.values():
                if state.status != PresenceStatus.OFFLINE and state.last_seen < cutoff:
                    state.status = PresenceStatus.OFFLINE
                    state.is_typing = False
                    state.typing_entity_id = None
                    state.typing_entity_type = None
                    self._clear_typing(state.user_id)
                    swept.append(replace(state))
        return swept

    def get_connection(self, user_id: str) -> Connection | None:
        return self._connections.get(user_id)

    def is_connected(self, user_id: str) -> bool:
        return user_id in self._connections

    def connections(self) -> list[Connection]:
        return list(self._connections.values())

    def connected_count(self) -> int:
        return len(self._connections)

    def get_presence(self, user_id: str) -> PresenceState | None:
        state = self._presence.get(user_id)
        return replace(state) if state else None

    def presences(self) -> list[PresenceState]:
        return [replace(state) for state in self._presence.values()]

    def active_count(self) -> int:
        return sum(1 for s in self._presence.values() if s.status != PresenceStatus.OFFLINE)

    def connected_users_with_roles(self, roles: Iterable[str]) -> set[str]:
        wanted = set(roles)
        return {c.user_id for c in self._connections.values() if c.role in wanted}

    def typing_in(self, entity_type: str, entity_id: str) -> list[TypingEntry]:
        return list(self._typing.get(entity_topic(entity_type, entity_id), {}).values())

    def _apply_typing(self, state: PresenceState, changes: dict[str, Any]) -> None:
        if changes["is_typing"]:
            entity_type = changes.get("typing_entity_type") or state.typing_entity_type
            entity_id = changes.get("typing_entity_id") or state.typing_entity_id
            if entity_type is None or entity_id is None:
                return
            room = entity_topic(entity_type, entity_id)
            previous_room = (
                entity_topic(state.typing_entity_type, state.typing_entity_id)
                if state.is_typing and state.typing_entity_type and state.typing_entity_id
                else None
            )
            if previous_room and previous_room != room:
                self._typing.get(previous_room, {}).pop(state.user_id, None)
            existing = self._typing.setdefault(room, {}).get(state.user_id)
            self._typing[room][state.user_id] = TypingEntry(
                user_id=state.user_id,
                username=state.username,
                entity_type=entity_type,
                entity_id=entity_id,
                started_at=existing.started_at if existing else _utcnow(),
            )
            state.is_typing = True
            state.typing_entity_type = entity_type
            state.typing_entity_id = entity_id
        else:
            self._clear_typing(state.user_id)
            state.is_typing = False
            state.typing_entity_id = None
            state.typing_entity_type = None

    def _clear_typing(self, user_id: str) -> None:
        for room in list(self._typing):
            entries = self._typing[room]
            entries.pop(user_id, None)
            if not entries:
                del self._typing[room]

class PresenceStore:
    """Write-through persistence of presence into the user_presence table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def save(self, state: PresenceState) -> None:
        """Insert or update the row for state.user_id.

        Raises:
            BrokerUnavailable: If the store cannot be written.
        """
        try:
            async with self._session_factory() as session:
                try:
                    await self._upsert(session, state)
                    await session.commit()
                except IntegrityError:
                    # Concurrent first insert for the same user; retry as update
                    await session.rollback()
                    await self._upsert(session, state)
                    await session.commit()
        except SQLAlchemyError as e:
            logger.exception("Failed to persist presence for user %s", state.user_id)
            raise BrokerUnavailable("Presence store unavailable") from e

    async def _upsert(self, session: AsyncSession, state: PresenceState) -> None:
        row = await session.get(UserPresence, state.user_id)
        if row is None:
            row = UserPresence(user_id=state.user_id)
            session.add(row)
        row.username = state.username
        row.role = state.role
        row.status = state.status
        row.current_page = state.current_page
        row.current_activity = state.current_activity
        row.is_typing = state.is_typing
        row.typing_entity_id = state.typing_entity_id
        row.typing_entity_type = state.typing_entity_type
        row.last_seen = state.last_seen
        row.updated_at = _utcnow()

    async def mark_stale_offline(self, cutoff: datetime) -> int:
        """Mark every non-offline presence last seen before cutoff as offline.

        Returns:
            Number of rows changed.
        """
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    update(UserPresence)
                    .where(
                        UserPresence.last_seen < cutoff,
                        UserPresence.status != PresenceStatus.OFFLINE,
                    )
                    .values(
                        status=PresenceStatus.OFFLINE,
                        is_typing=False,
                        typing_entity_id=None,
                        typing_entity_type=None,
                        updated_at=_utcnow(),
                    )
                )
                await session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as e:
            logger.exception("Failed to clean up stale presence records")
            raise BrokerUnavailable("Presence store unavailable") from e

    async def count_online(self) -> int:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(func.count())
                    .select_from(UserPresence)
                    .where(UserPresence.status != PresenceStatus.OFFLINE)
                )
                return result.scalar() or 0
        except SQLAlchemyError as e:
            raise BrokerUnavailable("Presence store unavailable") from e
