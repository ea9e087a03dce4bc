"""
Archtivy Matches — Async Database Engine & Session Factory

Provides two connection strategies:

1. **Cloud SQL** – Uses ``cloud-sql-python-connector`` with automatic IAM
   authentication.  Activated when ``CLOUD_SQL_USE_UNIX_SOCKET`` is *True*
   **and** ``CLOUD_SQL_INSTANCE_CONNECTION`` is provided.

2. **Plain URL** – A standard async connection string read from
   ``DATABASE_URL`` (``postgresql+asyncpg://…`` in production,
   ``sqlite+aiosqlite://…`` in tests and local tooling).

The engine is built lazily on first use so that importing the ORM models
never opens a connection.
"""

from __future__ import annotations

from functools import lru_cache
from typing import AsyncGenerator

import structlog
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from archtivy_matches.config import get_settings

logger = structlog.get_logger("archtivy.database")


# ------------------------------------------------------------------ #
# Declarative base for all ORM models
# ------------------------------------------------------------------ #

class Base(DeclarativeBase):
    """Shared declarative base for the engine's tables."""
    pass


# JSONB on PostgreSQL, plain JSON everywhere else.
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ------------------------------------------------------------------ #
# Pool configuration (PostgreSQL only)
# ------------------------------------------------------------------ #

_POOL_KWARGS = {
    "pool_size": 10,
    "max_overflow": 5,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}


# ------------------------------------------------------------------ #
# Engine construction helpers
# ------------------------------------------------------------------ #

def _build_cloud_sql_engine() -> AsyncEngine:
    """Create an async engine that connects through the Cloud SQL Python
    Connector (``project:region:instance``) with IAM authentication."""
    from google.cloud.sql.connector import Connector

    settings = get_settings()
    connector = Connector()

    async def _get_connection():
        return await connector.connect_async(
            settings.CLOUD_SQL_INSTANCE_CONNECTION,
            "asyncpg",
            user=settings.DB_USER,
            password=settings.DB_PASSWORD,
            db=settings.DB_NAME,
            enable_iam_auth=True,
        )

    engine = create_async_engine(
        "postgresql+asyncpg://",
        async_creator=_get_connection,
        echo=(settings.LOG_LEVEL == "DEBUG"),
        **_POOL_KWARGS,
    )
    logger.info(
        "database_engine_created",
        strategy="cloud_sql",
        instance=settings.CLOUD_SQL_INSTANCE_CONNECTION,
    )
    return engine


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine from a database URL.

    A plain ``postgresql://`` scheme is upgraded to the asyncpg dialect so
    that operators do not need to remember the driver prefix.
    """
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    kwargs = dict(_POOL_KWARGS) if url.startswith("postgresql") else {}
    engine = create_async_engine(url, echo=echo, **kwargs)

    logger.info("database_engine_created", strategy="url", dialect=engine.dialect.name)
    return engine


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    """Return the process-wide engine, building it on first call."""
    settings = get_settings()

    if settings.CLOUD_SQL_USE_UNIX_SOCKET and settings.CLOUD_SQL_INSTANCE_CONNECTION:
        return _build_cloud_sql_engine()

    return build_engine(settings.DATABASE_URL, echo=(settings.LOG_LEVEL == "DEBUG"))


@lru_cache(maxsize=1)
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_models(engine: AsyncEngine | None = None) -> None:
    """Create every table registered on ``Base.metadata`` if missing."""
    import archtivy_matches.models  # noqa: F401  (registers tables)

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_tables_ready", tables=sorted(Base.metadata.tables))


def dialect_insert(db_session: AsyncSession, model):
    """``INSERT`` construct for the session's dialect that supports
    ``on_conflict_do_update`` (PostgreSQL and SQLite)."""
    dialect = db_session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"upsert is not supported on dialect {dialect!r}")


def dialect_name(db_session: AsyncSession) -> str:
    return db_session.get_bind().dialect.name


# ------------------------------------------------------------------ #
# FastAPI dependency
# ------------------------------------------------------------------ #

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` and commit or roll back afterwards."""
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
