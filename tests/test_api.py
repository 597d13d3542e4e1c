"""Tests for the clinicsync REST API.

Tests cover:
- Health check and request ID propagation
- Authentication and role checks
- Sync status, events and cleanup endpoints
- Notification inbox
- Workflow endpoints and their error mapping
"""

import uuid

import pytest
from httpx import AsyncClient

from tests.conftest import make_token


class TestHealthAndMiddleware:
    """Tests for cross-cutting behavior."""

    @pytest.mark.asyncio
    async def test_health(self, api_client: AsyncClient):
        response = await api_client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_request_id_generated(self, api_client: AsyncClient):
        response = await api_client.get("/health")

        assert response.headers["X-Request-ID"]

    @pytest.mark.asyncio
    async def test_request_id_echoed_in_errors(self, api_client: AsyncClient):
        response = await api_client.get("/api/sync/status", headers={"X-Request-ID": "req-42"})

        assert response.status_code == 401
        assert response.headers["X-Request-ID"] == "req-42"
        body = response.json()
        assert body["error"] == "unauthorized"
        assert body["request_id"] == "req-42"


class TestAuthentication:
    """Tests for bearer token checks."""

    @pytest.mark.asyncio
    async def test_invalid_token(self, api_client: AsyncClient):
        response = await api_client.get(
            "/api/sync/status", headers={"Authorization": "Bearer not-a-jwt"}
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_secret(self, api_client: AsyncClient):
        token = make_token("u1", "eve", "ADMIN", secret="some-other-secret-entirely-123456")

        response = await api_client.get(
            "/api/sync/status", headers={"Authorization": f"Bearer {token}"}
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_cleanup_requires_admin(self, api_client: AsyncClient, nurse_headers):
        response = await api_client.post("/api/sync/cleanup", headers=nurse_headers)

        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"


class TestSyncEndpoints:
    """Tests for /api/sync."""

    @pytest.mark.asyncio
    async def test_status_empty(self, api_client: AsyncClient, nurse_headers):
        response = await api_client.get("/api/sync/status", headers=nurse_headers)

        assert response.status_code == 200
        assert response.json() == {
            "connectedUsers": 0,
            "activeUsers": 0,
            "recentSyncEvents": 0,
            "pendingNotifications": 0,
        }

    @pytest.mark.asyncio
    async def test_publish_event_then_list(self, api_client: AsyncClient, nurse_headers):
        event = {
            "type": "patient_update",
            "entityId": "p-1",
            "action": "update",
            "data": {"name": "Jane"},
            "userId": "nurse-1",
            "username": "nina",
        }

        published = await api_client.post("/api/sync/events", json=event, headers=nurse_headers)
        listed = await api_client.get("/api/sync/events", headers=nurse_headers)

        assert published.status_code == 202
        assert published.json()["entityId"] == "p-1"
        assert [e["entityId"] for e in listed.json()] == ["p-1"]

    @pytest.mark.asyncio
    async def test_malformed_event_rejected(self, api_client: AsyncClient, nurse_headers):
        response = await api_client.post(
            "/api/sync/events",
            json={"type": "patient_update", "action": "explode"},
            headers=nurse_headers,
        )

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_cleanup(self, api_client: AsyncClient, admin_headers):
        response = await api_client.post("/api/sync/cleanup", headers=admin_headers)

        assert response.status_code == 200
        assert response.json() == {"notificationsDeleted": 0, "presenceRecordsCleaned": 0}

    @pytest.mark.asyncio
    async def test_online_users_empty(self, api_client: AsyncClient, nurse_headers):
        response = await api_client.get("/api/sync/users", headers=nurse_headers)

        assert response.json() == []


class TestNotificationEndpoints:
    """Tests for /api/notifications."""

    @pytest.mark.asyncio
    async def test_send_list_and_mark_read(self, api_client: AsyncClient, admin_headers, nurse_headers):
        sent = await api_client.post(
            "/api/notifications",
            json={
                "notification": {
                    "type": "lab_result",
                    "title": "Lab results ready",
                    "message": "CBC for patient p-1",
                    "priority": "high",
                },
                "target": {"users": ["nurse-1"]},
            },
            headers=admin_headers,
        )
        assert sent.status_code == 201
        # nurse-1 is offline: stored but not delivered
        assert sent.json()["recipients"] == ["nurse-1"]
        assert sent.json()["delivered"] == []

        inbox = await api_client.get("/api/notifications", headers=nurse_headers)
        body = inbox.json()
        assert body["unreadCount"] == 1
        [notification] = body["notifications"]
        assert notification["priority"] == "high"
        assert notification["isRead"] is False

        marked = await api_client.post(
            f"/api/notifications/{notification['id']}/read", headers=nurse_headers
        )
        assert marked.json() == {"updated": 1}
        unread = await api_client.get(
            "/api/notifications", params={"unreadOnly": "true"}, headers=nurse_headers
        )
        assert unread.json()["notifications"] == []

    @pytest.mark.asyncio
    async def test_cannot_mark_someone_elses_notification(
        self, api_client: AsyncClient, admin_headers
    ):
        sent = await api_client.post(
            "/api/notifications",
            json={
                "notification": {"type": "system_alert", "title": "t", "message": "m"},
                "target": {"users": ["nurse-1"]},
            },
            headers=admin_headers,
        )
        notification_id = sent.json()["notificationIds"]["nurse-1"]

        response = await api_client.post(
            f"/api/notifications/{notification_id}/read", headers=admin_headers
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_empty_target_rejected(self, api_client: AsyncClient, admin_headers):
        response = await api_client.post(
            "/api/notifications",
            json={
                "notification": {"type": "system_alert", "title": "t", "message": "m"},
                "target": {},
            },
            headers=admin_headers,
        )

        assert response.status_code == 400


class TestWorkflowEndpoints:
    """Tests for /api/workflows."""

    @pytest.mark.asyncio
    async def test_initialize_and_get(self, api_client: AsyncClient, nurse_headers):
        created = await api_client.post(
            "/api/workflows", json={"claimId": "C1"}, headers=nurse_headers
        )

        assert created.status_code == 201
        body = created.json()
        assert body["overallStatus"] == "in_progress"
        assert body["currentStep"] == "compliance_verification"
        assert [s["stepName"] for s in body["steps"]] == [
            "compliance_verification",
            "invoice_generation",
            "payment_tracking",
        ]

        fetched = await api_client.get(f"/api/workflows/{body['workflowId']}", headers=nurse_headers)
        assert fetched.json()["claimId"] == "C1"

    @pytest.mark.asyncio
    async def test_unknown_workflow_is_404(self, api_client: AsyncClient, nurse_headers):
        response = await api_client.get(f"/api/workflows/{uuid.uuid4()}", headers=nurse_headers)

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_prerequisite_violation_is_409(self, api_client: AsyncClient, nurse_headers):
        created = await api_client.post(
            "/api/workflows", json={"claimId": "C1"}, headers=nurse_headers
        )
        workflow_id = created.json()["workflowId"]

        response = await api_client.post(
            f"/api/workflows/{workflow_id}/steps/payment_tracking/complete",
            json={"notes": "too early"},
            headers=nurse_headers,
        )

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "prerequisite_not_met"
        assert body["detail"]["unmet_prerequisites"] == ["invoice_generation"]

    @pytest.mark.asyncio
    async def test_cancel_and_activity(self, api_client: AsyncClient, admin_headers):
        created = await api_client.post(
            "/api/workflows", json={"claimId": "C2"}, headers=admin_headers
        )
        workflow_id = created.json()["workflowId"]

        cancelled = await api_client.post(
            f"/api/workflows/{workflow_id}/cancel",
            json={"reason": "Duplicate"},
            headers=admin_headers,
        )
        again = await api_client.post(f"/api/workflows/{workflow_id}/cancel", headers=admin_headers)
        activity = await api_client.get(
            f"/api/workflows/{workflow_id}/activity", headers=admin_headers
        )

        assert cancelled.json()["overallStatus"] == "cancelled"
        assert again.status_code == 409
        actions = {a["action"] for a in activity.json()}
        assert {"step_started", "workflow_cancelled", "step_rejected"} <= actions

    @pytest.mark.asyncio
    async def test_list_and_statistics(self, api_client: AsyncClient, nurse_headers):
        for claim_id in ("C1", "C2"):
            await api_client.post("/api/workflows", json={"claimId": claim_id}, headers=nurse_headers)

        listed = await api_client.get(
            "/api/workflows", params={"claimId": "C2"}, headers=nurse_headers
        )
        stats = await api_client.get("/api/workflows/statistics", headers=nurse_headers)

        assert [w["claimId"] for w in listed.json()] == ["C2"]
        assert stats.json()["summary"]["total_workflows"] == 2
