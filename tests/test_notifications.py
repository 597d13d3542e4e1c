"""Tests for notification targeting and delivery.

Tests cover:
- Recipient resolution across users, roles and exclusions
- Inbox rows and real-time frames for connected recipients
- Target validation
"""

import pytest
from sqlalchemy import select

from clinicsync.db.models import Notification
from clinicsync.errors import ValidationError
from clinicsync.services.notifications import NotificationDispatcher
from clinicsync.services.sync_service import SyncService
from clinicsync.sync.events import NotificationTarget
from tests.conftest import RecordingTransport, make_token

STAFF = [
    ("u1", "NURSE"),
    ("u2", "NURSE"),
    ("u3", "NURSE"),
    ("u4", "PHARMACIST"),
    ("u5", "CLINICAL_OFFICER"),
]

ALERT = {"type": "system_alert", "title": "Ward round", "message": "Starts in 10 minutes"}


@pytest.fixture
async def staff(sync_service: SyncService, pubsub) -> dict[str, RecordingTransport]:
    """Five connected users across three roles, with connect frames cleared."""
    transports = {}
    for user_id, role in STAFF:
        transport = RecordingTransport()
        await sync_service.connect(transport, make_token(user_id, f"user-{user_id}", role))
        transports[user_id] = transport
    await pubsub.flush()
    for transport in transports.values():
        transport.clear()
    return transports


async def _inbox_owners(session_factory) -> list[str]:
    async with session_factory() as session:
        rows = (await session.execute(select(Notification))).scalars().all()
    return sorted(row.user_id for row in rows)


class TestRecipientResolution:
    """Tests for users / roles / excludeUsers targeting."""

    @pytest.mark.asyncio
    async def test_role_minus_excluded_user(
        self, notifications: NotificationDispatcher, staff, pubsub, session_factory
    ):
        target = {"roles": ["NURSE"], "excludeUsers": ["u1"]}

        result = await notifications.send_notification(ALERT, target)
        await pubsub.flush()

        assert result.recipients == {"u2", "u3"}
        assert result.delivered == {"u2", "u3"}
        assert await _inbox_owners(session_factory) == ["u2", "u3"]
        for user_id, transport in staff.items():
            frames = transport.events("notification")
            if user_id in ("u2", "u3"):
                assert [f["data"]["title"] for f in frames] == ["Ward round"]
            else:
                assert frames == []

    @pytest.mark.asyncio
    async def test_resolution_matches_set_arithmetic(
        self, notifications: NotificationDispatcher, staff
    ):
        target = NotificationTarget(users=["u4", "offline-7"], roles=["NURSE"], exclude_users=["u2"])

        assert notifications.resolve_recipients(target) == {"u1", "u3", "u4", "offline-7"}

    @pytest.mark.asyncio
    async def test_offline_user_gets_inbox_row_only(
        self, notifications: NotificationDispatcher, staff, session_factory
    ):
        result = await notifications.send_notification(ALERT, {"users": ["offline-7"]})

        assert result.recipients == {"offline-7"}
        assert result.delivered == set()
        assert await _inbox_owners(session_factory) == ["offline-7"]

    @pytest.mark.asyncio
    async def test_exclude_only_target_reaches_nobody(
        self, notifications: NotificationDispatcher, staff, pubsub, session_factory
    ):
        result = await notifications.send_notification(ALERT, {"excludeUsers": ["u1"]})
        await pubsub.flush()

        assert result.recipients == set()
        assert result.notification_ids == {}
        assert await _inbox_owners(session_factory) == []
        assert all(t.events("notification") == [] for t in staff.values())


class TestTargetValidation:
    """Tests for malformed targets."""

    @pytest.mark.asyncio
    async def test_empty_target_rejected(self, notifications: NotificationDispatcher):
        with pytest.raises(ValidationError) as exc_info:
            await notifications.send_notification(ALERT, {})

        # The detail is rendered as JSON by the API and the socket
        [error] = exc_info.value.detail["errors"]
        assert "ctx" not in error
