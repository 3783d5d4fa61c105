"""Database adapters package.

Provides the ``DatabaseClient`` Protocol and the async PostgreSQL adapter
used by every restore component.

Usage:
    from db_restore.adapters import DatabaseClient, AsyncPostgresAdapter
"""

from db_restore.adapters.base import DatabaseClient
from db_restore.adapters.postgres import AsyncPostgresAdapter

__all__ = [
    "DatabaseClient",
    "AsyncPostgresAdapter",
]
