"""Backups in the layout the restore side consumes.

Each run writes a fresh ``bkp_YYYY_MM_DD_N`` directory holding, per database:

- ``<db>.bkp``: ``pg_dump`` custom-format archive
- ``<db>.roles``: comma-separated role list
- for TimescaleDB databases, ``<db>.timescaledb_info`` plus the
  ``hypertables``, ``continuous_aggs``, ``compression`` and ``policies``
  SQL files, generated from the catalog

TimescaleDB internal schemas and continuous-aggregate views are excluded
from the dump; the extension and the companion SQL files re-create them.

Usage:
    from db_restore.backup import backup_databases

    run = await backup_databases(settings, Path("./backups"), databases=["orders_db"])
    print(run.directory)
"""

import logging
from datetime import date
from pathlib import Path
from typing import Any

from db_restore.adapters.base import DatabaseClient
from db_restore.backup.models import BackupRun, DatabaseBackup, TimescaleDBMetadata
from db_restore.config.models import RestoreSettings
from db_restore.factory import ConnectionFactory, connection_factory, resolve_url
from db_restore.quoting import qualified_name, quote_literal
from db_restore.restore.detect import parse_toc
from db_restore.restore.models import parse_roles_csv, validate_database_name
from db_restore.tools import PgTools, ToolError

logger = logging.getLogger(__name__)

TIMESCALEDB_INTERNAL_SCHEMAS = (
    "_timescaledb_catalog",
    "_timescaledb_config",
    "_timescaledb_cache",
    "_timescaledb_internal",
)


# ------------------------------------------------------------------
# Backup directory
# ------------------------------------------------------------------


def next_backup_dir(base_dir: Path, today: date | None = None) -> Path:
    """First ``bkp_YYYY_MM_DD_N`` under ``base_dir`` that does not exist yet."""
    stamp = (today or date.today()).strftime("%Y_%m_%d")
    n = 0
    while (base_dir / f"bkp_{stamp}_{n}").exists():
        n += 1
    return base_dir / f"bkp_{stamp}_{n}"


# ------------------------------------------------------------------
# Catalog queries
# ------------------------------------------------------------------


async def list_databases(admin: DatabaseClient) -> list[str]:
    rows = await admin.fetch_all(
        "SELECT datname FROM pg_database WHERE datistemplate = false ORDER BY 1"
    )
    return [row["datname"] for row in rows]


async def has_timescaledb(client: DatabaseClient) -> bool:
    value = await client.fetch_value(
        "SELECT 1 FROM pg_extension WHERE extname = 'timescaledb'"
    )
    return value is not None


async def export_roles(client: DatabaseClient, output: Path, role_filter: list[str] | None = None) -> list[str]:
    """Write the roles file: the filter list, or every non-system role."""
    if role_filter:
        roles = list(role_filter)
    else:
        rows = await client.fetch_all(
            "SELECT rolname FROM pg_roles "
            "WHERE rolname !~ '^pg_' AND rolname <> 'postgres' ORDER BY rolname"
        )
        roles = [row["rolname"] for row in rows]
    output.write_text(", ".join(roles) + "\n", encoding="utf-8")
    return roles


async def export_timescaledb_info(client: DatabaseClient, output: Path) -> int:
    """Write ``hypertable|partition column|chunk interval`` lines."""
    rows = await client.fetch_all(
        "SELECT ht.schema_name || '.' || ht.table_name AS hypertable, "
        "d.column_name AS partition_column, d.interval_length AS chunk_interval "
        "FROM _timescaledb_catalog.hypertable ht "
        "JOIN _timescaledb_catalog.dimension d ON ht.id = d.hypertable_id "
        "WHERE d.interval_length IS NOT NULL "
        "ORDER BY ht.schema_name, ht.table_name"
    )
    lines = [
        f"{row['hypertable']}|{row['partition_column']}|{row['chunk_interval']}"
        for row in rows
    ]
    output.write_text("".join(line + "\n" for line in lines), encoding="utf-8")
    return len(lines)


# ------------------------------------------------------------------
# Supplementary SQL generation
# ------------------------------------------------------------------


def _regclass(schema: str, name: str) -> str:
    return quote_literal(qualified_name(schema, name))


def _interval_arg(value: Any) -> str:
    """Render a policy offset: NULL, a bare integer, or an INTERVAL literal."""
    if value is None:
        return "NULL"
    text = str(value)
    if text.lstrip("-").isdigit():
        return text
    return f"INTERVAL {quote_literal(text)}"


def render_hypertables_sql(rows: list[dict[str, Any]]) -> str:
    blocks = []
    for row in rows:
        target = f"{row['schema_name']}.{row['table_name']}"
        blocks.append(
            f"-- Hypertable: {target}\n"
            "SELECT create_hypertable(\n"
            f"  {_regclass(row['schema_name'], row['table_name'])},\n"
            f"  {quote_literal(row['column_name'])},\n"
            f"  chunk_time_interval => {row['interval_length']},\n"
            "  if_not_exists => true,\n"
            "  migrate_data => true\n"
            ");\n"
        )
    return "\n".join(blocks)


def render_continuous_aggs_sql(rows: list[dict[str, Any]]) -> str:
    blocks = []
    for row in rows:
        definition = row["view_definition"].strip().rstrip(";")
        blocks.append(
            f"-- Continuous Aggregate: {row['view_schema']}.{row['view_name']}\n"
            f"CREATE MATERIALIZED VIEW {qualified_name(row['view_schema'], row['view_name'])}\n"
            "WITH (timescaledb.continuous) AS\n"
            f"{definition};\n"
        )
    return "\n".join(blocks)


def render_compression_sql(rows: list[dict[str, Any]]) -> str:
    """One ``ALTER TABLE ... SET (timescaledb.compress ...)`` per hypertable.

    ``rows`` come from ``timescaledb_information.compression_settings``,
    one row per column that takes part in segmenting or ordering.
    """
    tables: dict[tuple[str, str], dict[str, list]] = {}
    for row in rows:
        key = (row["hypertable_schema"], row["hypertable_name"])
        entry = tables.setdefault(key, {"segmentby": [], "orderby": []})
        if row.get("segmentby_column_index") is not None:
            entry["segmentby"].append((row["segmentby_column_index"], row["attname"]))
        if row.get("orderby_column_index") is not None:
            direction = "ASC" if row.get("orderby_asc", True) else "DESC"
            nulls = " NULLS FIRST" if row.get("orderby_nullsfirst") else ""
            entry["orderby"].append(
                (row["orderby_column_index"], f"{row['attname']} {direction}{nulls}")
            )

    blocks = []
    for (schema, table), entry in tables.items():
        options = ["  timescaledb.compress"]
        if entry["segmentby"]:
            columns = ", ".join(name for _, name in sorted(entry["segmentby"]))
            options.append(f"  timescaledb.compress_segmentby = {quote_literal(columns)}")
        if entry["orderby"]:
            columns = ", ".join(name for _, name in sorted(entry["orderby"]))
            options.append(f"  timescaledb.compress_orderby = {quote_literal(columns)}")
        blocks.append(
            f"-- Compression: {schema}.{table}\n"
            f"ALTER TABLE {qualified_name(schema, table)} SET (\n"
            + ",\n".join(options)
            + "\n);\n"
        )
    return "\n".join(blocks)


def render_policies_sql(rows: list[dict[str, Any]]) -> str:
    """Refresh, compression and retention policies from ``timescaledb_information.jobs``.

    Policies on a continuous aggregate's materialization hypertable are
    written against the view (``view_schema``/``view_name`` columns).
    """
    blocks = []
    for row in rows:
        if row.get("view_name"):
            schema, name = row["view_schema"], row["view_name"]
        else:
            schema, name = row["hypertable_schema"], row["hypertable_name"]
        target = _regclass(schema, name)
        proc = row["proc_name"]

        if proc == "policy_refresh_continuous_aggregate":
            seconds = row["schedule_seconds"]
            blocks.append(
                f"-- Refresh policy for continuous aggregate: {schema}.{name}\n"
                "SELECT add_continuous_aggregate_policy(\n"
                f"  {target},\n"
                f"  start_offset => {_interval_arg(row.get('start_offset'))},\n"
                f"  end_offset => {_interval_arg(row.get('end_offset'))},\n"
                f"  schedule_interval => INTERVAL '{float(seconds):.6f} seconds',\n"
                "  if_not_exists => true\n"
                ");\n"
            )
        elif proc == "policy_compression":
            blocks.append(
                f"-- Compression policy: {schema}.{name}\n"
                "SELECT add_compression_policy(\n"
                f"  {target},\n"
                f"  compress_after => {_interval_arg(row.get('compress_after'))},\n"
                "  if_not_exists => true\n"
                ");\n"
            )
        elif proc == "policy_retention":
            blocks.append(
                f"-- Retention policy: {schema}.{name}\n"
                "SELECT add_retention_policy(\n"
                f"  {target},\n"
                f"  drop_after => {_interval_arg(row.get('drop_after'))},\n"
                "  if_not_exists => true\n"
                ");\n"
            )
        else:
            logger.debug("Skipping job %s on %s.%s", proc, schema, name)
    return "\n".join(blocks)


HYPERTABLES_SQL = (
    "SELECT ht.schema_name, ht.table_name, d.column_name, d.interval_length "
    "FROM _timescaledb_catalog.hypertable ht "
    "JOIN _timescaledb_catalog.dimension d ON ht.id = d.hypertable_id "
    "WHERE d.interval_length IS NOT NULL AND ht.schema_name !~ '^_timescaledb' "
    "ORDER BY ht.schema_name, ht.table_name"
)
CONTINUOUS_AGGS_SQL = (
    "SELECT view_schema, view_name, view_definition "
    "FROM timescaledb_information.continuous_aggregates "
    "ORDER BY view_schema, view_name"
)
COMPRESSION_SQL = (
    "SELECT hypertable_schema, hypertable_name, attname, segmentby_column_index, "
    "orderby_column_index, orderby_asc, orderby_nullsfirst "
    "FROM timescaledb_information.compression_settings "
    "WHERE hypertable_schema !~ '^_timescaledb' "
    "ORDER BY hypertable_schema, hypertable_name"
)
POLICIES_SQL = (
    "SELECT j.proc_name, j.hypertable_schema, j.hypertable_name, "
    "extract(epoch FROM j.schedule_interval) AS schedule_seconds, "
    "j.config ->> 'start_offset' AS start_offset, "
    "j.config ->> 'end_offset' AS end_offset, "
    "j.config ->> 'compress_after' AS compress_after, "
    "j.config ->> 'drop_after' AS drop_after, "
    "ca.view_schema, ca.view_name "
    "FROM timescaledb_information.jobs j "
    "LEFT JOIN timescaledb_information.continuous_aggregates ca "
    "ON ca.materialization_hypertable_schema = j.hypertable_schema "
    "AND ca.materialization_hypertable_name = j.hypertable_name "
    "WHERE j.proc_name LIKE 'policy_%' "
    "ORDER BY j.job_id"
)


async def export_timescaledb_metadata(
    client: DatabaseClient, directory: Path, database: str
) -> TimescaleDBMetadata:
    """Write ``.timescaledb_info`` and the four supplementary SQL files."""
    metadata = TimescaleDBMetadata(
        info=directory / f"{database}.timescaledb_info",
        hypertables=directory / f"{database}.hypertables.sql",
        continuous_aggs=directory / f"{database}.continuous_aggs.sql",
        compression=directory / f"{database}.compression.sql",
        policies=directory / f"{database}.policies.sql",
    )
    await export_timescaledb_info(client, metadata.info)

    metadata.hypertables.write_text(
        render_hypertables_sql(await client.fetch_all(HYPERTABLES_SQL)), encoding="utf-8"
    )
    caggs = await client.fetch_all(CONTINUOUS_AGGS_SQL)
    metadata.continuous_aggs.write_text(render_continuous_aggs_sql(caggs), encoding="utf-8")
    metadata.compression.write_text(
        render_compression_sql(await client.fetch_all(COMPRESSION_SQL)), encoding="utf-8"
    )
    metadata.policies.write_text(
        render_policies_sql(await client.fetch_all(POLICIES_SQL)), encoding="utf-8"
    )
    metadata.excluded_views = [qualified_name(r["view_schema"], r["view_name"]) for r in caggs]
    return metadata


# ------------------------------------------------------------------
# Dump
# ------------------------------------------------------------------


async def backup_database(
    client: DatabaseClient,
    database: str,
    directory: Path,
    settings: RestoreSettings,
    tools: PgTools,
    role_filter: list[str] | None = None,
) -> DatabaseBackup:
    """Dump one database and write its companion files into ``directory``.

    Raises:
        ToolError: If ``pg_dump`` fails.
    """
    validate_database_name(database)
    dump_path = directory / f"{database}.bkp"
    item = DatabaseBackup(
        database=database, dump=dump_path, roles=directory / f"{database}.roles"
    )

    exclude_schemas: list[str] = []
    exclude_tables: list[str] = []
    if await has_timescaledb(client):
        logger.info("TimescaleDB detected in '%s', exporting metadata", database)
        item.timescaledb = await export_timescaledb_metadata(client, directory, database)
        exclude_schemas = list(TIMESCALEDB_INTERNAL_SCHEMAS)
        exclude_tables = list(item.timescaledb.excluded_views)
        for view in exclude_tables:
            logger.info("Excluding continuous aggregate view: %s", view)

    logger.info("Dumping '%s' to %s", database, dump_path)
    result = await tools.dump(
        resolve_url(settings.admin_url, database),
        dump_path,
        exclude_schemas=exclude_schemas,
        exclude_tables=exclude_tables,
    )
    if not result.ok:
        raise ToolError(
            f"pg_dump of '{database}' exited with code {result.returncode}: "
            + "; ".join(result.tail(5)),
            result,
        )
    item.size_bytes = dump_path.stat().st_size

    listing = await tools.list_contents(dump_path)
    if listing.ok:
        item.table_count = sum(1 for e in parse_toc(listing.output) if e.entry_type == "TABLE")
        logger.info("Tables backed up: %d", item.table_count)

    await export_roles(client, item.roles, role_filter)
    return item


async def backup_databases(
    settings: RestoreSettings,
    output_root: Path,
    databases: list[str] | None = None,
    roles_csv: str | None = None,
    *,
    tools: PgTools | None = None,
    connect: ConnectionFactory | None = None,
    today: date | None = None,
) -> BackupRun:
    """Back up ``databases`` (default: every non-template database).

    Args:
        settings: Connection and tool settings.
        output_root: Directory under which ``bkp_YYYY_MM_DD_N`` is created.
        databases: Explicit database names.
        roles_csv: Comma-separated roles for the roles files.  ``None``
            exports every non-system role.
        tools: Client binary runner (default: built from settings).
        connect: Client factory (default: SQLAlchemy adapters from settings).
        today: Date for the directory name (default: today).

    Returns:
        ``BackupRun`` describing everything written.
    """
    tools = tools or PgTools(run_as=settings.run_as, bin_dir=settings.bin_dir)
    connect = connect or connection_factory(settings)
    role_filter = parse_roles_csv(roles_csv) if roles_csv else None

    if not databases:
        admin = connect("postgres")
        try:
            databases = await list_databases(admin)
        finally:
            await admin.close()

    directory = next_backup_dir(output_root, today)
    directory.mkdir(parents=True)
    run = BackupRun(directory=directory)

    for database in databases:
        client = connect(database)
        try:
            run.databases.append(
                await backup_database(client, database, directory, settings, tools, role_filter)
            )
        finally:
            await client.close()

    logger.info("Backup complete: %d database(s) in %s", len(run.databases), directory)
    return run
