"""Async PostgreSQL database adapter.

Provides ``AsyncPostgresAdapter``, an async implementation of the
``DatabaseClient`` protocol using SQLAlchemy's async engine with the
``asyncpg`` driver.

Usage:
    from db_restore.adapters.postgres import AsyncPostgresAdapter

    adapter = AsyncPostgresAdapter(
        "postgresql://postgres@/postgres?host=/var/run/postgresql"
    )

    size = await adapter.fetch_value("SELECT pg_database_size(current_database())")
    await adapter.close()
"""

from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine


def create_async_engine_pooled(database_url: str, **kwargs: Any) -> AsyncEngine:
    """Create an async SQLAlchemy engine for maintenance work.

    Default settings:

    - ``isolation_level="AUTOCOMMIT"``: ``CREATE DATABASE``, ``DROP DATABASE``
      and ``CREATE EXTENSION ... CASCADE`` must run outside a transaction.
    - ``pool_size=2`` / ``max_overflow=2``: the restore is a single sequential
      actor; a small pool keeps idle backends off the target database.
    - ``pool_pre_ping=True``: Validate connections before checkout.
    - ``connect_args={"timeout": 10}``: asyncpg connect timeout in seconds.

    Args:
        database_url: PostgreSQL connection URL with ``postgresql+asyncpg://``
            scheme.
        **kwargs: Additional keyword arguments forwarded to
            ``create_async_engine``.

    Returns:
        Configured ``AsyncEngine``.
    """
    defaults: dict[str, Any] = {
        "isolation_level": "AUTOCOMMIT",
        "pool_size": 2,
        "max_overflow": 2,
        "pool_pre_ping": True,
        "connect_args": {"timeout": 10},
        "echo": False,
    }
    # Caller kwargs override defaults
    merged = {**defaults, **kwargs}

    return create_async_engine(database_url, **merged)


def normalize_async_url(database_url: str) -> str:
    """Normalize a PostgreSQL URL to the ``postgresql+asyncpg://`` scheme.

    1. ``postgres://`` -> ``postgresql://`` (Heroku-style alias)
    2. ``postgresql://`` -> ``postgresql+asyncpg://``
    """
    url = database_url
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        url = "postgresql+asyncpg://" + url[len("postgresql://"):]
    return url


class AsyncPostgresAdapter:
    """Async PostgreSQL implementation of the ``DatabaseClient`` protocol.

    Uses SQLAlchemy's async engine with the ``asyncpg`` driver in autocommit
    mode.  One adapter is bound to one database; the restore pipeline keeps
    one for the maintenance database (``postgres``) and opens another for
    the restore target.

    Args:
        database_url: PostgreSQL connection URL.  Accepts ``postgres://``,
            ``postgresql://``, or ``postgresql+asyncpg://`` schemes.
        **engine_kwargs: Additional keyword arguments forwarded to
            ``create_async_engine_pooled``.

    Example:
        async with AsyncPostgresAdapter("postgresql://postgres@db/orders_db") as db:
            tables = await db.fetch_all("SELECT tablename FROM pg_tables")
    """

    def __init__(self, database_url: str, **engine_kwargs: Any) -> None:
        self._engine: AsyncEngine = create_async_engine_pooled(
            normalize_async_url(database_url), **engine_kwargs
        )

    async def __aenter__(self) -> "AsyncPostgresAdapter":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Query Methods
    # ------------------------------------------------------------------

    async def execute(self, sql: str, params: dict[str, Any] | None = None) -> None:
        """Execute a statement that returns no rows.

        Without ``params`` the statement goes through ``exec_driver_sql`` so
        that quoted identifiers are never mistaken for bind parameters.
        """
        async with self._engine.begin() as conn:
            if params is None:
                await conn.exec_driver_sql(sql)
            else:
                await conn.execute(text(sql), params)

    async def fetch_all(
        self, sql: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Run a query and return all rows as dicts."""
        async with self._engine.connect() as conn:
            result = await conn.execute(text(sql), params or {})
            col_names = list(result.keys())
            return [dict(zip(col_names, row)) for row in result.fetchall()]

    async def fetch_value(self, sql: str, params: dict[str, Any] | None = None) -> Any:
        """Run a query and return the first column of the first row."""
        async with self._engine.connect() as conn:
            result = await conn.execute(text(sql), params or {})
            return result.scalar()

    async def close(self) -> None:
        """Close the async engine and dispose of the connection pool."""
        if self._engine:
            await self._engine.dispose()
