"""Database client protocol definition.

Defines the ``DatabaseClient`` Protocol used by every restore component.
All methods are ``async def`` -- the library is async-first.

Usage:
    from db_restore.adapters.base import DatabaseClient

    async def count_roles(client: DatabaseClient) -> int:
        return await client.fetch_value("SELECT count(*) FROM pg_roles")
"""

from typing import Any, Protocol


class DatabaseClient(Protocol):
    """Database client interface that all adapters must implement.

    The restore components only need three kinds of round trip: a statement
    with no result (DDL, GRANT), a query returning rows, and a query
    returning a single value.  Statements run in autocommit mode because
    ``CREATE DATABASE`` and friends refuse to run inside a transaction.

    All methods are async -- callers must ``await`` every operation.
    """

    async def execute(self, sql: str, params: dict[str, Any] | None = None) -> None:
        """Execute a statement that returns no rows.

        Args:
            sql: SQL statement.  When ``params`` is ``None`` the text is sent
                to the driver verbatim (no bind-parameter parsing), so quoted
                identifiers containing ``:`` are safe.
            params: Optional dict of named parameters (``:name`` style).

        Example:
            await client.execute('GRANT CONNECT ON DATABASE "orders_db" TO "app_writer"')
        """
        ...

    async def fetch_all(
        self, sql: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Run a query and return every row as a dict.

        Returns:
            List of dicts, one per row.  Empty list if no rows.

        Example:
            rows = await client.fetch_all(
                "SELECT table_name FROM information_schema.tables "
                "WHERE table_schema = :schema",
                {"schema": "public"},
            )
        """
        ...

    async def fetch_value(self, sql: str, params: dict[str, Any] | None = None) -> Any:
        """Run a query and return the first column of the first row.

        Returns:
            The scalar value, or ``None`` when the query returns no rows.

        Example:
            exists = await client.fetch_value(
                "SELECT 1 FROM pg_roles WHERE rolname = :name",
                {"name": "app_writer"},
            )
        """
        ...

    async def close(self) -> None:
        """Close the client and release pooled connections."""
        ...
