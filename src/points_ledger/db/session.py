"""Async engine and session factory for the ledger store."""

from __future__ import annotations

from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from points_ledger.core.settings import settings
from points_ledger.db.base import Base

SQLITE_BUSY_TIMEOUT_SECONDS = 30


def _is_file_sqlite(url: str) -> bool:
    parsed = make_url(url)
    return parsed.get_backend_name() == "sqlite" and parsed.database not in (None, "", ":memory:")


def _serialize_sqlite_writers(engine: AsyncEngine) -> None:
    """Start every transaction with BEGIN IMMEDIATE so concurrent writers queue on the busy timeout."""

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_implicit_begin(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: str | None = None, *, echo: bool | None = None) -> AsyncEngine:
    url = database_url or settings.database_url
    connect_args: dict[str, Any] = {}
    file_sqlite = _is_file_sqlite(url)
    if file_sqlite:
        connect_args["timeout"] = SQLITE_BUSY_TIMEOUT_SECONDS
    engine = create_async_engine(
        url,
        echo=settings.database_echo if echo is None else echo,
        connect_args=connect_args,
    )
    if file_sqlite:
        _serialize_sqlite_writers(engine)
    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


engine = build_engine()
async_session = build_session_factory(engine)


async def init_models(target: AsyncEngine | None = None) -> None:
    """Create all ledger tables on the given engine."""

    import points_ledger.models  # noqa: F401  register mappers

    async with (target or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
