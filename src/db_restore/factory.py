"""Connection factory.

Derives per-database URLs from the configured maintenance URL and builds
adapters for them.  The same URL, rendered without the SQLAlchemy driver
suffix, is handed to the libpq client binaries (``pg_restore --dbname``);
``PgTools`` moves its password into ``PGPASSWORD`` before they start.
"""

from collections.abc import Callable

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from db_restore.adapters.base import DatabaseClient
from db_restore.adapters.postgres import AsyncPostgresAdapter
from db_restore.config.models import ConfigurationError, RestoreSettings

# Opens a client bound to the named database
ConnectionFactory = Callable[[str], DatabaseClient]


def resolve_url(base_url: str, database: str | None = None) -> str:
    """Return ``base_url`` pointed at ``database`` as a libpq-style URL.

    Args:
        base_url: Any PostgreSQL URL (``postgres://``, ``postgresql://`` or
            ``postgresql+asyncpg://``).
        database: Database name to substitute.  ``None`` keeps the one in
            the URL.

    Returns:
        ``postgresql://`` URL with the password kept in clear text.

    Raises:
        ConfigurationError: If the URL cannot be parsed.

    Example:
        >>> resolve_url("postgresql://postgres@/postgres?host=/tmp", "orders_db")
        'postgresql://postgres@/orders_db?host=%2Ftmp'
    """
    if base_url.startswith("postgres://"):
        base_url = "postgresql://" + base_url[len("postgres://"):]
    try:
        url = make_url(base_url)
    except ArgumentError as e:
        raise ConfigurationError(f"Invalid database URL: {e}") from e

    url = url.set(drivername="postgresql")
    if database is not None:
        url = url.set(database=database)
    return url.render_as_string(hide_password=False)


def get_adapter(settings: RestoreSettings, database: str | None = None) -> AsyncPostgresAdapter:
    """Create an adapter for ``database`` (default: the maintenance database)."""
    return AsyncPostgresAdapter(resolve_url(settings.admin_url, database))


def connection_factory(settings: RestoreSettings) -> ConnectionFactory:
    """Return a ``ConnectionFactory`` bound to ``settings``."""

    def _connect(database: str) -> DatabaseClient:
        return get_adapter(settings, database)

    return _connect
