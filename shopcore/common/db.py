"""Database bootstrap helpers shared by the API process and workers."""

from sqlalchemy import JSON, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from shopcore.common.config import settings


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in local runs and tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


def build_engine(dsn: str) -> AsyncEngine:
    """Create an async engine for `dsn`.

    SQLite allows a single writer; transactions are opened with
    `BEGIN IMMEDIATE` so concurrent writers queue on the file lock instead of
    deadlocking when they upgrade from a read lock.
    """

    if not dsn.startswith("sqlite"):
        return create_async_engine(dsn, pool_pre_ping=True)

    engine = create_async_engine(dsn, connect_args={"timeout": 30})

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    # `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
    return async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


# Single engine per process; no connection is opened until first use.
engine = build_engine(settings.postgres_dsn)
SessionLocal = build_session_factory(engine)
