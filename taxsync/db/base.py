"""Async engine, session factory and declarative base."""

from typing import Any, AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from taxsync.core.config import get_settings

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./taxsync.db"


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""

    pass


def get_database_url() -> str:
    """Return the configured database URL, falling back to a local SQLite file."""
    return get_settings().DATABASE_URL or DEFAULT_DATABASE_URL


def _enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    # The sqlite driver manages transactions itself and breaks SAVEPOINT;
    # hand BEGIN over to SQLAlchemy so per-item savepoints work.
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(url: str, **kwargs: Any) -> AsyncEngine:
    """Create an async engine, with savepoint support on SQLite."""
    engine = create_async_engine(url, echo=False, future=True, **kwargs)
    if engine.dialect.name == "sqlite":
        _enable_sqlite_savepoints(engine)
    return engine


engine = build_engine(get_database_url())

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a session that commits on success."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
