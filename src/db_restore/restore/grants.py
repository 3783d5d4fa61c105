"""Schema privilege grants.

Applied after every completed restore so application roles can use the
restored objects.  The core grants fail fast; schema ownership and the
TimescaleDB extension schemas are best effort.
"""

import logging

from db_restore.adapters.base import DatabaseClient
from db_restore.quoting import quote_ident

logger = logging.getLogger(__name__)

# schema -> statements, "{schema}" and "{role}" substituted with quoted identifiers
TIMESCALEDB_SCHEMA_GRANTS: dict[str, tuple[str, ...]] = {
    "_timescaledb_catalog": (
        "GRANT USAGE ON SCHEMA {schema} TO {role}",
        "GRANT SELECT ON ALL TABLES IN SCHEMA {schema} TO {role}",
    ),
    "_timescaledb_config": (
        "GRANT USAGE ON SCHEMA {schema} TO {role}",
        "GRANT SELECT ON ALL TABLES IN SCHEMA {schema} TO {role}",
    ),
    "_timescaledb_internal": (
        "GRANT USAGE ON SCHEMA {schema} TO {role}",
        "GRANT SELECT, INSERT, UPDATE, DELETE ON ALL TABLES IN SCHEMA {schema} TO {role}",
        "GRANT ALL PRIVILEGES ON ALL SEQUENCES IN SCHEMA {schema} TO {role}",
    ),
    "_timescaledb_functions": (
        "GRANT USAGE ON SCHEMA {schema} TO {role}",
        "GRANT EXECUTE ON ALL FUNCTIONS IN SCHEMA {schema} TO {role}",
    ),
}

SCHEMA_GRANTS: tuple[str, ...] = (
    "GRANT USAGE, CREATE ON SCHEMA {schema} TO {role}",
    "GRANT ALL PRIVILEGES ON ALL TABLES IN SCHEMA {schema} TO {role}",
    "GRANT ALL PRIVILEGES ON ALL SEQUENCES IN SCHEMA {schema} TO {role}",
    "GRANT ALL PRIVILEGES ON ALL FUNCTIONS IN SCHEMA {schema} TO {role}",
    "ALTER DEFAULT PRIVILEGES FOR ROLE {role} IN SCHEMA {schema} GRANT ALL ON TABLES TO {role}",
    "ALTER DEFAULT PRIVILEGES FOR ROLE {role} IN SCHEMA {schema} GRANT ALL ON SEQUENCES TO {role}",
    "ALTER DEFAULT PRIVILEGES FOR ROLE {role} IN SCHEMA {schema} GRANT ALL ON FUNCTIONS TO {role}",
)


async def schema_exists(target: DatabaseClient, schema: str) -> bool:
    value = await target.fetch_value(
        "SELECT 1 FROM pg_namespace WHERE nspname = :name", {"name": schema}
    )
    return value is not None


async def grant_schema_privileges(target: DatabaseClient, schema: str, role: str) -> None:
    """Give ``role`` ownership of and full privileges on ``schema``."""
    ids = {"schema": quote_ident(schema), "role": quote_ident(role)}
    try:
        await target.execute("ALTER SCHEMA {schema} OWNER TO {role}".format(**ids))
    except Exception as e:
        logger.warning("Could not transfer ownership of schema '%s' to '%s': %s", schema, role, e)

    for template in SCHEMA_GRANTS:
        await target.execute(template.format(**ids))
    logger.info("Granted privileges on schema '%s' to '%s'", schema, role)


async def grant_timescaledb_privileges(target: DatabaseClient, role: str) -> list[str]:
    """Grant access to TimescaleDB's own schemas; never raises.

    Returns:
        The extension schemas that were granted.
    """
    granted: list[str] = []
    for schema, templates in TIMESCALEDB_SCHEMA_GRANTS.items():
        try:
            if not await schema_exists(target, schema):
                logger.debug("Schema %s not present, skipping", schema)
                continue
            ids = {"schema": quote_ident(schema), "role": quote_ident(role)}
            for template in templates:
                await target.execute(template.format(**ids))
            granted.append(schema)
        except Exception as e:
            logger.warning("TimescaleDB grant on %s for '%s' failed: %s", schema, role, e)
    return granted


async def apply_grants(
    target: DatabaseClient,
    roles: list[str],
    schemas: list[str],
    *,
    timescaledb: bool = False,
) -> None:
    """Apply the grant set for every (schema, role) pair."""
    for role in dict.fromkeys(roles):
        for schema in schemas:
            await grant_schema_privileges(target, schema, role)
        if timescaledb:
            await grant_timescaledb_privileges(target, role)


# ------------------------------------------------------------------
# Ownership transfer
# ------------------------------------------------------------------

# Statements generated server-side with format(); :schema and :role are bound
_REASSIGN_SQL = """
SELECT format('ALTER TABLE %I.%I OWNER TO %I', schemaname, tablename, CAST(:role AS text)) AS statement
FROM pg_tables WHERE schemaname = :schema
UNION ALL
SELECT format('ALTER SEQUENCE %I.%I OWNER TO %I', n.nspname, c.relname, CAST(:role AS text))
FROM pg_class c JOIN pg_namespace n ON n.oid = c.relnamespace
WHERE c.relkind = 'S' AND n.nspname = :schema
  AND NOT EXISTS (
    SELECT 1 FROM pg_depend d
    WHERE d.objid = c.oid AND d.classid = CAST('pg_class' AS regclass) AND d.deptype IN ('a', 'i')
  )
UNION ALL
SELECT format('ALTER VIEW %I.%I OWNER TO %I', schemaname, viewname, CAST(:role AS text))
FROM pg_views WHERE schemaname = :schema
UNION ALL
SELECT format('ALTER MATERIALIZED VIEW %I.%I OWNER TO %I', schemaname, matviewname, CAST(:role AS text))
FROM pg_matviews WHERE schemaname = :schema
UNION ALL
SELECT format('ALTER ROUTINE %s OWNER TO %I', CAST(p.oid AS regprocedure), CAST(:role AS text))
FROM pg_proc p JOIN pg_namespace n ON n.oid = p.pronamespace
WHERE n.nspname = :schema
UNION ALL
SELECT format('ALTER TYPE %I.%I OWNER TO %I', n.nspname, t.typname, CAST(:role AS text))
FROM pg_type t JOIN pg_namespace n ON n.oid = t.typnamespace
WHERE n.nspname = :schema
  AND (t.typtype IN ('e', 'd')
       OR (t.typtype = 'c' AND EXISTS (
            SELECT 1 FROM pg_class c WHERE c.oid = t.typrelid AND c.relkind = 'c')))
"""


async def reassign_schema_objects(target: DatabaseClient, schema: str, role: str) -> int:
    """Transfer ownership of every object in ``schema`` to ``role``.

    Covers tables, standalone sequences, views, materialized views,
    routines and composite/enum/domain types.  Fails on the first error.

    Returns:
        Number of objects reassigned.
    """
    rows = await target.fetch_all(_REASSIGN_SQL, {"schema": schema, "role": role})
    for row in rows:
        await target.execute(row["statement"])
    logger.info("Reassigned %d object(s) in schema '%s' to '%s'", len(rows), schema, role)
    return len(rows)
