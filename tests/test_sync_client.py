"""Tests for the client-side sync state reducer."""

from typing import Any

import pytest

from clinicsync.client import SyncClient, Toast


class QueueTransport:
    """ClientTransport fed from a list of frames; records what is sent."""

    def __init__(self, frames: list[dict[str, Any]] | None = None) -> None:
        self.incoming = list(frames or [])
        self.sent: list[dict[str, Any]] = []
        self.closed = False

    async def send(self, frame: dict[str, Any]) -> None:
        self.sent.append(frame)

    async def receive(self) -> dict[str, Any] | None:
        return self.incoming.pop(0) if self.incoming else None

    async def close(self) -> None:
        self.closed = True


def _frame(event: str, **data: Any) -> dict[str, Any]:
    return {"event": event, "data": data}


@pytest.fixture
def toasts() -> list[Toast]:
    return []


@pytest.fixture
def client(toasts) -> SyncClient:
    return SyncClient(on_toast=toasts.append, history_size=3)


class TestApply:
    """Tests for reducing server frames."""

    def test_connected_adds_self(self, client):
        client.apply(_frame("connected", userId="n1", username="nina", role="NURSE"))

        assert client.user["userId"] == "n1"
        assert client.get_online_users_by_role("NURSE")[0]["userId"] == "n1"

    def test_presence_upsert_and_disconnect(self, client):
        client.apply(_frame("presence_update", userId="d1", role="CLINICAL_OFFICER", status="online"))
        client.apply(_frame("presence_update", userId="d1", current_activity="triage"))

        assert client.connected_users_count == 1
        assert client.connected_users[0]["role"] == "CLINICAL_OFFICER"
        assert client.get_online_users_by_activity("triage")[0]["userId"] == "d1"

        client.apply(_frame("user_disconnected", userId="d1"))
        assert client.connected_users_count == 0

    def test_sync_event_history_is_bounded(self, client, toasts):
        for n in range(5):
            client.apply(
                _frame(
                    "sync_event",
                    entityId=f"p{n}",
                    entityType="patient",
                    action="update",
                    username="nina",
                )
            )

        assert [e["entityId"] for e in client.sync_events] == ["p4", "p3", "p2"]
        assert toasts[-1] == Toast(title="patient Updated", description="nina updated a patient")

    def test_delete_event_has_no_toast(self, client, toasts):
        client.apply(_frame("sync_event", entityId="p1", entityType="patient", action="delete"))

        assert toasts == []
        assert len(client.sync_events) == 1

    def test_urgent_notification_toast(self, client, toasts):
        client.apply(
            _frame("notification", title="Patient assigned", message="Bed 4", priority="urgent")
        )

        assert toasts == [Toast("Patient assigned", "Bed 4", "destructive")]
        assert client.unread_notifications_count == 1

    def test_typing_repeat_does_not_duplicate(self, client):
        typing = _frame(
            "user_typing", userId="n2", entityId="v1", entityType="visit", isTyping=True
        )
        client.apply(typing)
        client.apply(typing)

        assert len(client.get_typing_users("v1", "visit")) == 1

        client.apply(
            _frame("user_typing", userId="n2", entityId="v1", entityType="visit", isTyping=False)
        )
        assert client.get_typing_users("v1", "visit") == []

    def test_error_frame_recorded(self, client):
        client.apply(_frame("error", message="Frame is not valid JSON"))

        assert client.last_error == {"message": "Frame is not valid JSON"}

    def test_unknown_event_ignored(self, client):
        client.apply(_frame("from_the_future", anything=1))

        assert client.connected_users == []

    def test_listeners(self, client):
        seen = []
        client.on("user_activity", seen.append)

        client.apply(_frame("user_activity", userId="n2", activity="charting"))

        assert seen == [{"userId": "n2", "activity": "charting"}]


class TestActions:
    """Tests for sending client events."""

    @pytest.mark.asyncio
    async def test_actions_without_connection_are_dropped(self, client):
        assert await client.start_typing("v1", "visit") is False

    @pytest.mark.asyncio
    async def test_run_consumes_until_closed(self, client):
        transport = QueueTransport([_frame("connected", userId="n1", username="nina", role="NURSE")])

        await client.run(transport)

        assert client.user["userId"] == "n1"
        assert client.is_connected is False

    @pytest.mark.asyncio
    async def test_actions_send_frames(self, client):
        transport = QueueTransport()
        client._transport = transport
        client.is_connected = True

        await client.update_presence(status="busy")
        await client.start_editing("rx-1", "prescription")
        await client.record_activity("dispensing", "/pharmacy")

        assert transport.sent == [
            {"event": "presence_update", "data": {"status": "busy"}},
            {
                "event": "entity_edit_start",
                "data": {"entityId": "rx-1", "entityType": "prescription"},
            },
            {"event": "user_activity", "data": {"activity": "dispensing", "page": "/pharmacy"}},
        ]
