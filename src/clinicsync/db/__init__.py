"""Database access for clinicsync.

Engines and sessions are always built explicitly from settings and handed
to services; there is no module-level engine. PostgreSQL runs on psycopg,
tests use SQLite through aiosqlite.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

if TYPE_CHECKING:
    from clinicsync.core.config import DatabaseSettings


def create_engine(database: DatabaseSettings) -> AsyncEngine:
    """Async engine for ``database.url``.

    SQLite gets one shared connection so an in-memory database is the same
    database for every session.
    """
    if database.url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    else:
        options = {
            "pool_size": database.pool_size,
            "max_overflow": database.max_overflow,
            "pool_timeout": database.pool_timeout,
        }
    return create_async_engine(database.url, echo=database.echo, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Objects stay readable after commit; services return them to callers
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


__all__ = ["create_engine", "create_session_factory"]
