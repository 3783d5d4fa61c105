"""Identifier and literal quoting for generated SQL.

Role, schema and database names arrive from files on the backup mount, so
every identifier is quoted before it is placed into a statement.  Quoting
uses the identifier preparer of SQLAlchemy's asyncpg dialect, which doubles
embedded double quotes and leaves ``%`` alone (the dialect does not use
``format`` paramstyle).

Usage:
    >>> from db_restore.quoting import quote_ident, qualified_name
    >>> quote_ident('app_writer')
    '"app_writer"'
    >>> qualified_name("public", "orders")
    '"public"."orders"'
"""

from sqlalchemy.dialects.postgresql.asyncpg import PGDialect_asyncpg

_PREPARER = PGDialect_asyncpg().identifier_preparer


def quote_ident(name: str) -> str:
    """Quote a single identifier.

    Raises:
        ValueError: If ``name`` is empty or contains a NUL byte.
    """
    if not name:
        raise ValueError("Identifier must not be empty")
    if "\x00" in name:
        raise ValueError(f"Identifier contains NUL byte: {name!r}")
    return _PREPARER.quote_identifier(name)


def qualified_name(schema: str, name: str) -> str:
    """Quote ``schema.name`` as two identifiers."""
    return f"{quote_ident(schema)}.{quote_ident(name)}"


def quote_literal(value: str) -> str:
    """Quote a string literal for files replayed by ``psql``.

    Assumes ``standard_conforming_strings = on`` (the server default since
    PostgreSQL 9.1), so only single quotes need doubling.
    """
    if "\x00" in value:
        raise ValueError(f"Literal contains NUL byte: {value!r}")
    return "'" + value.replace("'", "''") + "'"
