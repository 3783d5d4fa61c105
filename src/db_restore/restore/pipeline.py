"""End-to-end restore run.

    readiness -> artifacts -> target database -> classification
      -> extension check -> roles -> orchestrator -> grants -> report

Usage:
    from db_restore.config import load_restore_config
    from db_restore.restore import RestoreJob, run_restore

    settings = load_restore_config()
    job = RestoreJob.from_invocation("orders_db", "orders_db.bkp", "app_writer")
    result = await run_restore(job, settings)
"""

import logging

from sqlalchemy.engine import make_url

from db_restore.adapters.base import DatabaseClient
from db_restore.config.models import RestoreSettings
from db_restore.factory import ConnectionFactory, connection_factory, resolve_url
from db_restore.quoting import quote_ident
from db_restore.restore.detect import classify_backup
from db_restore.restore.grants import apply_grants
from db_restore.restore.models import (
    BackupArtifacts,
    PipelineResult,
    RestoreJob,
    RestoreState,
)
from db_restore.restore.orchestrator import RestoreOrchestrator
from db_restore.restore.readiness import wait_until_ready
from db_restore.restore.report import collect_report
from db_restore.restore.roles import provision_roles, resolve_roles
from db_restore.tools import PgTools

logger = logging.getLogger(__name__)


class ExtensionUnavailableError(Exception):
    """Raised when a hypertable dump meets a server without TimescaleDB."""

    pass


async def database_exists(admin: DatabaseClient, database: str) -> bool:
    value = await admin.fetch_value(
        "SELECT 1 FROM pg_database WHERE datname = :name", {"name": database}
    )
    return value is not None


async def ensure_database(admin: DatabaseClient, database: str) -> bool:
    """Create ``database`` if missing.  Returns True when it was created."""
    if await database_exists(admin, database):
        return False
    db = quote_ident(database)
    logger.info("Creating database '%s'", database)
    await admin.execute(f"CREATE DATABASE {db}")
    await admin.execute(f"GRANT TEMPORARY, CONNECT ON DATABASE {db} TO PUBLIC")
    return True


async def timescaledb_available(admin: DatabaseClient) -> bool:
    value = await admin.fetch_value(
        "SELECT 1 FROM pg_available_extensions WHERE name = 'timescaledb'"
    )
    return value is not None


async def run_restore(
    job: RestoreJob,
    settings: RestoreSettings,
    *,
    tools: PgTools | None = None,
    connect: ConnectionFactory | None = None,
) -> PipelineResult:
    """Restore ``job`` and report on the result.

    Args:
        job: Restore request.
        settings: Loaded settings.
        tools: Client binary runner (default: built from settings).
        connect: Client factory (default: SQLAlchemy adapters from settings).

    Raises:
        ServerNotReadyError: If the server does not come up in time.
        ExtensionUnavailableError: If the dump needs TimescaleDB and the
            server does not ship it.
        ConfigurationError: If roles must be created without a password, or
            the roles file is not valid UTF-8.
        RestoreInProgressError: If another run holds the restore lock.
    """
    tools = tools or PgTools(run_as=settings.run_as, bin_dir=settings.bin_dir)
    connect = connect or connection_factory(settings)
    database = job.target_database

    admin_dsn = resolve_url(settings.admin_url)
    await wait_until_ready(
        lambda: tools.is_ready(admin_dsn),
        interval=settings.ready_interval,
        timeout=settings.ready_timeout,
    )

    artifacts = BackupArtifacts.locate(settings.backup_root, job.backup, database)
    logger.info("Target database: %s, backup: %s", database, artifacts.dump)

    admin = connect(_maintenance_database(settings))
    try:
        await ensure_database(admin, database)

        classification = await classify_backup(artifacts, tools)
        if classification.has_timescaledb and not await timescaledb_available(admin):
            raise ExtensionUnavailableError(
                f"Backup of '{database}' contains TimescaleDB objects "
                "but the timescaledb extension is not available on this server"
            )

        roles = resolve_roles(job.roles, artifacts.roles_file)
        if roles:
            await provision_roles(admin, roles, database, settings.role_default_password)

        orchestrator = RestoreOrchestrator(
            job,
            artifacts,
            classification,
            settings,
            admin=admin,
            connect=connect,
            tools=tools,
            roles=roles,
        )
        restore = await orchestrator.run()
    finally:
        await admin.close()

    target = connect(database)
    try:
        if roles and restore.state == RestoreState.COMPLETED:
            await apply_grants(
                target,
                roles,
                settings.grant_schemas,
                timescaledb=classification.has_timescaledb,
            )
        report = await collect_report(
            target,
            database,
            timescaledb=classification.has_timescaledb,
            table_limit=settings.report_table_limit,
        )
    finally:
        await target.close()

    return PipelineResult(restore=restore, report=report)


def _maintenance_database(settings: RestoreSettings) -> str:
    return make_url(resolve_url(settings.admin_url)).database or "postgres"
