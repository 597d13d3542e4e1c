"""Pytest configuration and shared fixtures.

Service tests run against an in-memory SQLite database (aiosqlite) built from
the ORM metadata, so they need no external services.

Environment variables:
    TEST_DATABASE_URL: Override the test database URL (e.g. a PostgreSQL
        instance using the psycopg driver).
"""

import os
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt
import pytest
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr

from clinicsync.api import create_app
from clinicsync.api.container import AppServices
from clinicsync.core.config import AuthSettings, DatabaseSettings, Settings, SyncSettings
from clinicsync.db import create_engine, create_session_factory
from clinicsync.db.models import Base
from clinicsync.services.audit import AuditLogService
from clinicsync.services.auth import JWTTokenVerifier
from clinicsync.services.notifications import NotificationDispatcher
from clinicsync.services.sync_service import SyncService
from clinicsync.sync.events import OutboundEvent
from clinicsync.sync.presence import PresenceRegistry, PresenceStore
from clinicsync.sync.pubsub import InMemoryPubSub

TEST_JWT_SECRET = "test-secret-key-for-clinicsync-tests"  # noqa: S105


# ---------------------------------------------------------------------------
# Configuration fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def database_url() -> str:
    """Get test database URL from environment or use in-memory SQLite."""
    return os.environ.get("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")


@pytest.fixture
def settings(database_url: str) -> Settings:
    """Development settings pointing at the test database."""
    return Settings(
        environment="dev",
        database=DatabaseSettings(url=database_url),
        auth=AuthSettings(jwt_secret=SecretStr(TEST_JWT_SECRET)),
        sync=SyncSettings(cleanup_interval_seconds=3600),
    )


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def engine(settings: Settings):
    """Async engine with every clinicsync table created."""
    engine = create_engine(settings.database)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Auth helpers
# ---------------------------------------------------------------------------
def make_token(
    user_id: str,
    username: str,
    role: str,
    *,
    expires_in: timedelta = timedelta(hours=1),
    secret: str = TEST_JWT_SECRET,
) -> str:
    """Sign an access token the test verifier accepts."""
    payload = {
        "userId": user_id,
        "username": username,
        "role": role,
        "exp": datetime.now(UTC) + expires_in,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def token_factory():
    return make_token


@pytest.fixture
def verifier(settings: Settings) -> JWTTokenVerifier:
    return JWTTokenVerifier(settings.auth)


# ---------------------------------------------------------------------------
# Sync fixtures
# ---------------------------------------------------------------------------
class RecordingTransport:
    """Stand-in for a WebSocket that records every frame sent to it."""

    def __init__(self) -> None:
        self.frames: list[dict[str, Any]] = []
        self.closed_with: tuple[int, str | None] | None = None

    async def send_json(self, data: Any) -> None:
        self.frames.append(data)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closed_with = (code, reason)

    def events(self, name: str | None = None) -> list[dict[str, Any]]:
        return [f for f in self.frames if name is None or f["event"] == name]

    def clear(self) -> None:
        self.frames.clear()


class RecordingHandler:
    """PubSub handler that records delivered events."""

    def __init__(self) -> None:
        self.events: list[OutboundEvent] = []

    async def __call__(self, event: OutboundEvent) -> None:
        self.events.append(event)


@pytest.fixture
def transport_factory():
    return RecordingTransport


@pytest.fixture
async def pubsub():
    bus = InMemoryPubSub()
    yield bus
    await bus.close()


@pytest.fixture
def registry() -> PresenceRegistry:
    return PresenceRegistry()


@pytest.fixture
def notifications(session_factory, pubsub, registry) -> NotificationDispatcher:
    return NotificationDispatcher(session_factory, pubsub, registry)


@pytest.fixture
def sync_service(settings, session_factory, pubsub, registry, verifier, notifications) -> SyncService:
    """SyncService wired against the test database, without the cleanup loop."""
    return SyncService(
        pubsub=pubsub,
        registry=registry,
        verifier=verifier,
        notifications=notifications,
        settings=settings.sync,
        audit=AuditLogService(session_factory),
        presence_store=PresenceStore(session_factory),
    )


# ---------------------------------------------------------------------------
# API fixtures (in-process testing via ASGI transport)
# ---------------------------------------------------------------------------
@pytest.fixture
def app_services(settings, session_factory) -> AppServices:
    return AppServices.build(settings, session_factory)


@pytest.fixture
def test_app(app_services):
    """FastAPI application bound to the test database."""
    return create_app(services=app_services)


@pytest.fixture
async def api_client(test_app, app_services) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing the API.

    ASGITransport does not run the lifespan, so services are started here.
    """
    await app_services.start()
    transport = ASGITransport(app=test_app)
    try:
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
    finally:
        await app_services.shutdown()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token('admin-1', 'admin', 'ADMIN')}"}


@pytest.fixture
def nurse_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token('nurse-1', 'nina', 'NURSE')}"}
