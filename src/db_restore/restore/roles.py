"""Role provisioning.

Roles named on the command line (or in ``<db>.roles`` beside the dump) are
created before ``pg_restore`` runs so that ownership and ACL entries in the
dump resolve.  Provisioning is idempotent and fail-fast.
"""

import logging
from pathlib import Path

from db_restore.adapters.base import DatabaseClient
from db_restore.config.models import ConfigurationError
from db_restore.quoting import quote_ident
from db_restore.restore.models import parse_roles_csv

logger = logging.getLogger(__name__)

__all__ = [
    "ROLE_SESSION_DEFAULTS",
    "parse_roles_csv",
    "read_roles_file",
    "resolve_roles",
    "role_exists",
    "provision_roles",
]

# ALTER ROLE ... SET applied to newly created roles
ROLE_SESSION_DEFAULTS: tuple[tuple[str, str], ...] = (
    ("client_encoding", "utf8"),
    ("default_transaction_isolation", "read committed"),
    ("TimeZone", "UTC"),
)


def read_roles_file(path: Path) -> list[str]:
    """Read role names from a roles file.

    ``#`` starts a comment; names are separated by commas or whitespace.
    A missing file yields an empty list.

    Raises:
        ConfigurationError: If the file is not valid UTF-8.
    """
    if not path.is_file():
        return []
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ConfigurationError(f"Roles file {path} is not valid UTF-8: {e}") from e
    roles: list[str] = []
    for line in text.splitlines():
        line = line.split("#", 1)[0]
        roles.extend(name for name in line.replace(",", " ").split() if name)
    return roles


def resolve_roles(explicit: list[str], roles_file: Path) -> list[str]:
    """Explicit roles win; otherwise fall back to the roles file."""
    if explicit:
        return list(explicit)
    roles = read_roles_file(roles_file)
    if roles:
        logger.info("Read %d role(s) from %s", len(roles), roles_file)
    return roles


async def role_exists(admin: DatabaseClient, role: str) -> bool:
    value = await admin.fetch_value(
        "SELECT 1 FROM pg_roles WHERE rolname = :name", {"name": role}
    )
    return value is not None


async def _create_role(admin: DatabaseClient, role: str, password: str) -> None:
    # format() quotes the password server-side
    statement = await admin.fetch_value(
        "SELECT format('CREATE ROLE %I WITH LOGIN PASSWORD %L', "
        "CAST(:name AS text), CAST(:password AS text))",
        {"name": role, "password": password},
    )
    await admin.execute(statement)
    for setting, value in ROLE_SESSION_DEFAULTS:
        await admin.execute(
            f"ALTER ROLE {quote_ident(role)} SET {setting} TO '{value}'"
        )


async def provision_roles(
    admin: DatabaseClient,
    roles: list[str],
    database: str,
    password: str | None,
) -> list[str]:
    """Ensure every role exists and may connect to ``database``.

    Args:
        admin: Client on the maintenance database.
        roles: Role names in order; duplicates are harmless.
        database: Database to grant CONNECT on.
        password: Password for roles that must be created.

    Returns:
        Names of the roles that were created.

    Raises:
        ConfigurationError: If a role must be created and no password is set.
    """
    created: list[str] = []
    for role in roles:
        if await role_exists(admin, role):
            logger.info("Role '%s' already exists", role)
        else:
            if not password:
                raise ConfigurationError(
                    f"Role '{role}' does not exist and ROLE_DEFAULT_PASSWORD is not set"
                )
            logger.info("Creating role '%s'", role)
            await _create_role(admin, role, password)
            created.append(role)
        await admin.execute(
            f"GRANT CONNECT ON DATABASE {quote_ident(database)} TO {quote_ident(role)}"
        )
    return created
