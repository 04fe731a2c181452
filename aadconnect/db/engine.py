"""Async SQLAlchemy engine and session management."""

from collections.abc import AsyncIterator
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from aadconnect.core.settings import DatabaseSettings
from aadconnect.db.base import BaseEntity


class _EngineHolder:
    """Lazy singleton for the async engine and session factory."""

    engine: AsyncEngine | None = None
    factory: async_sessionmaker[AsyncSession] | None = None


_holder = _EngineHolder()


def configure_sqlite(engine: AsyncEngine) -> None:
    """Enable foreign keys and let SQLAlchemy own BEGIN so savepoints work."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_conn: Any, _rec: Any) -> None:
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Connection) -> None:
        conn.exec_driver_sql("BEGIN")


def _get_engine() -> AsyncEngine:
    """Lazily create the async engine."""
    if _holder.engine is None:
        db = DatabaseSettings()
        if db.async_url.startswith("sqlite"):
            _holder.engine = create_async_engine(db.async_url)
            configure_sqlite(_holder.engine)
        else:
            _holder.engine = create_async_engine(
                db.async_url,
                pool_size=db.pool_size,
                max_overflow=db.max_overflow,
            )
    return _holder.engine


def _get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Lazily create the async session factory."""
    if _holder.factory is None:
        _holder.factory = async_sessionmaker(
            _get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _holder.factory


async def create_schema() -> None:
    """Create any missing tables on the configured database."""
    async with _get_engine().begin() as conn:
        await conn.run_sync(BaseEntity.metadata.create_all)


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency that yields an async database session."""
    factory = _get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
