"""Async engine and session factory wiring."""

from __future__ import annotations

from typing import Any, AsyncIterator

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from minuteserv_rewards.core.settings import settings


def enable_sqlite_transactions(engine: AsyncEngine) -> None:
    """Let SQLAlchemy own SQLite transaction boundaries.

    pysqlite/aiosqlite emit their own implicit BEGIN, which breaks SAVEPOINT
    handling. The driver behaviour is switched off and every transaction
    starts with ``BEGIN IMMEDIATE`` so concurrent writers queue on the
    database lock instead of failing on a read-to-write upgrade.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:  # pragma: no cover - driver glue
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:  # pragma: no cover - driver glue
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: str | None = None, **kwargs: Any) -> AsyncEngine:
    """Create an async engine with driver-level timeouts applied."""

    url = make_url(database_url or settings.database_url)
    connect_args: dict[str, Any] = dict(kwargs.pop("connect_args", {}) or {})

    if url.get_backend_name() == "sqlite":
        connect_args.setdefault("timeout", settings.database_command_timeout_seconds)
    elif url.get_driver_name() == "asyncpg":
        connect_args.setdefault("command_timeout", settings.database_command_timeout_seconds)
        kwargs.setdefault("pool_timeout", settings.database_pool_timeout_seconds)
        kwargs.setdefault("pool_pre_ping", True)

    engine = create_async_engine(
        url,
        echo=settings.database_echo,
        future=True,
        connect_args=connect_args,
        **kwargs,
    )
    if url.get_backend_name() == "sqlite":
        enable_sqlite_transactions(engine)
    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


engine = build_engine()
async_session = build_session_factory(engine)


async def get_session() -> AsyncIterator[AsyncSession]:
    """Yield a session scoped to one unit of work."""

    async with async_session() as session:
        yield session


__all__ = [
    "async_session",
    "build_engine",
    "build_session_factory",
    "enable_sqlite_transactions",
    "engine",
    "get_session",
]
