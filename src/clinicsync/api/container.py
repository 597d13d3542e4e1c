"""Explicit construction of the API process's services.

The application entry point builds one AppServices at startup and tears it
down at shutdown; routers reach it through ``request.app.state.services``.
Nothing here is a module-level singleton, so tests build their own container
against an isolated database.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from clinicsync.db import create_engine, create_session_factory
from clinicsync.services.audit import AuditLogService
from clinicsync.services.auth import JWTTokenVerifier
from clinicsync.services.clinic_records import ClinicRecords
from clinicsync.services.notifications import NotificationDispatcher
from clinicsync.services.sync_service import SyncService
from clinicsync.services.workflow import SHAWorkflowService
from clinicsync.services.workflow_executors import SHAWorkflowExecutors
from clinicsync.services.workflow_graph import graph_for
from clinicsync.sync.presence import PresenceRegistry, PresenceStore
from clinicsync.sync.pubsub import InMemoryPubSub

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

    from clinicsync.core.config import Settings
    from clinicsync.services.auth import TokenVerifier
    from clinicsync.sync.pubsub import PubSub

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    """Everything the HTTP and WebSocket routes need, wired once."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    pubsub: PubSub
    registry: PresenceRegistry
    verifier: TokenVerifier
    notifications: NotificationDispatcher
    audit: AuditLogService
    sync: SyncService
    workflows: SHAWorkflowService
    engine: AsyncEngine | None = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        *,
        verifier: TokenVerifier | None = None,
    ) -> AppServices:
        """Wire the service graph.

        Args:
            settings: Loaded configuration.
            session_factory: Existing session factory; when omitted an engine
                is created from settings and owned by the container.
            verifier: Token verifier; defaults to JWT verification.
        """
        engine = None
        if session_factory is None:
            engine = create_engine(settings.database)
            session_factory = create_session_factory(engine)

        pubsub = InMemoryPubSub(mailbox_size=settings.sync.mailbox_size)
        registry = PresenceRegistry()
        verifier = verifier or JWTTokenVerifier(settings.auth)
        notifications = NotificationDispatcher(session_factory, pubsub, registry)
        audit = AuditLogService(session_factory)
        sync = SyncService(
            pubsub=pubsub,
            registry=registry,
            verifier=verifier,
            notifications=notifications,
            settings=settings.sync,
            audit=audit,
            presence_store=PresenceStore(session_factory),
        )
        workflows = SHAWorkflowService(
            session_factory,
            graph=graph_for(settings.workflow.graph),
            executors=SHAWorkflowExecutors(ClinicRecords()).as_mapping(),
        )
        return cls(
            settings=settings,
            session_factory=session_factory,
            pubsub=pubsub,
            registry=registry,
            verifier=verifier,
            notifications=notifications,
            audit=audit,
            sync=sync,
            workflows=workflows,
            engine=engine,
        )

    async def start(self) -> None:
        await self.sync.start()
        logger.info("API services started (workflow graph=%s)", self.settings.workflow.graph.value)

    async def shutdown(self) -> None:
        """Stop background sweeps, close the transport, then the engine if owned."""
        await self.sync.shutdown()
        if self.engine is not None:
            await self.engine.dispose()
        logger.info("API services stopped")
