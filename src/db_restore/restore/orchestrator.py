"""Restore orchestrator.

Drives one database through the restore state machine::

    NOT_STARTED -> SKIPPED
                -> RESTORING -> COMPLETED
                             -> FAILED

The marker lock is held for the whole run.  Nothing is touched when the
marker exists and ``force`` was not requested.  A missing dump is a skip
with reason ``backup-missing``; the caller still produces a report.

Usage:
    orchestrator = RestoreOrchestrator(
        job, artifacts, classification, settings,
        admin=admin, connect=connection_factory(settings), tools=tools,
        roles=["app_writer"],
    )
    result = await orchestrator.run()
"""

import logging

from db_restore.adapters.base import DatabaseClient
from db_restore.config.models import RestoreSettings
from db_restore.factory import ConnectionFactory, resolve_url
from db_restore.quoting import quote_ident
from db_restore.restore.marker import RestoreMarker
from db_restore.restore.models import (
    BackupArtifacts,
    BackupClassification,
    RestoreJob,
    RestoreResult,
    RestoreState,
)
from db_restore.restore.supplementary import SupplementaryStepError, run_supplementary_steps
from db_restore.tools import PgTools, classify_output

logger = logging.getLogger(__name__)

SKIP_MARKER_PRESENT = "marker-present"
SKIP_BACKUP_MISSING = "backup-missing"

# User tables only; TimescaleDB catalog and chunk schemas are excluded
RESTORED_TABLES_SQL = (
    "SELECT count(*) FROM pg_catalog.pg_tables "
    "WHERE schemaname NOT IN ('pg_catalog', 'information_schema') "
    "AND schemaname !~ '^_?timescaledb_'"
)


class RestoreOrchestrator:
    """Restore one database from one backup.

    Args:
        job: What to restore.
        artifacts: Resolved dump and companion paths.
        classification: Output of ``classify_backup``.
        settings: Restore settings (jobs, data dir, failure policy).
        admin: Client on the maintenance database.
        connect: Opens a client on a named database.
        tools: Client binary runner.
        roles: Roles to re-grant CONNECT to after a forced re-create.
    """

    def __init__(
        self,
        job: RestoreJob,
        artifacts: BackupArtifacts,
        classification: BackupClassification,
        settings: RestoreSettings,
        *,
        admin: DatabaseClient,
        connect: ConnectionFactory,
        tools: PgTools,
        roles: list[str] | None = None,
    ) -> None:
        self.job = job
        self.artifacts = artifacts
        self.classification = classification
        self.settings = settings
        self.admin = admin
        self.connect = connect
        self.tools = tools
        self.roles = list(roles if roles is not None else job.roles)
        self.marker = RestoreMarker(settings.data_dir, job.target_database)
        self.state = RestoreState.NOT_STARTED

    @property
    def database(self) -> str:
        return self.job.target_database

    @property
    def dsn(self) -> str:
        return resolve_url(self.settings.admin_url, self.database)

    async def run(self) -> RestoreResult:
        """Run the state machine to a terminal state.

        Raises:
            RestoreInProgressError: If another run holds the lock.
        """
        result = RestoreResult(
            database=self.database,
            classification=self.classification,
            marker_path=self.marker.path,
        )

        with self.marker.claim():
            if self.marker.exists() and not self.job.force:
                logger.info(
                    "Restore marker exists (%s), skipping restore. "
                    "Pass 'force' to restore again.",
                    self.marker.path,
                )
                return self._finish(result, RestoreState.SKIPPED, SKIP_MARKER_PRESENT)

            if not self.artifacts.dump.is_file():
                logger.warning("Backup file not found at %s, skipping restore", self.artifacts.dump)
                return self._finish(result, RestoreState.SKIPPED, SKIP_BACKUP_MISSING)

            self.state = RestoreState.RESTORING
            try:
                await self._restore(result)
            except SupplementaryStepError as e:
                result.steps = e.completed
                logger.error("Restore of '%s' aborted: %s", self.database, e)
                result.error = str(e)
                return self._finish(result, RestoreState.FAILED)
            except Exception as e:
                logger.exception("Restore of '%s' failed", self.database)
                result.error = f"{type(e).__name__}: {e}"
                return self._finish(result, RestoreState.FAILED)

            self.marker.write(self.job.backup, kind=self.classification.kind)
            return self._finish(result, RestoreState.COMPLETED)

    def _finish(
        self, result: RestoreResult, state: RestoreState, skip_reason: str | None = None
    ) -> RestoreResult:
        self.state = state
        result.state = state
        result.skip_reason = skip_reason
        return result

    # ------------------------------------------------------------------
    # RESTORING
    # ------------------------------------------------------------------

    async def _restore(self, result: RestoreResult) -> None:
        if self.job.force and self.marker.exists():
            await self._recreate_database()

        hypertable = self.classification.has_timescaledb
        target = self.connect(self.database)
        try:
            if hypertable:
                await self._ensure_extension(target)

            await self._run_pg_restore(result)
            await self._verify_tables(target, result)

            if hypertable:
                result.steps = await run_supplementary_steps(
                    self.artifacts,
                    target,
                    self.tools,
                    self.dsn,
                    policy=self.settings.supplementary_failure_policy,
                )
                for step in result.steps:
                    if step.status == "failed":
                        result.warnings.append(f"{step.name}: {step.detail}")
        finally:
            await target.close()

    async def _recreate_database(self) -> None:
        """Drop and re-create the target for a clean forced restore."""
        db = quote_ident(self.database)
        logger.info("Force mode: dropping and re-creating database '%s'", self.database)
        self.marker.clear()

        await self.admin.fetch_all(
            "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
            "WHERE datname = :name AND pid <> pg_backend_pid()",
            {"name": self.database},
        )
        await self.admin.execute(f"DROP DATABASE IF EXISTS {db}")
        await self.admin.execute(f"CREATE DATABASE {db}")
        await self.admin.execute(f"GRANT TEMPORARY, CONNECT ON DATABASE {db} TO PUBLIC")
        for role in self.roles:
            await self.admin.execute(f"GRANT CONNECT ON DATABASE {db} TO {quote_ident(role)}")

    async def _ensure_extension(self, target: DatabaseClient) -> None:
        await target.execute("CREATE EXTENSION IF NOT EXISTS timescaledb CASCADE")
        version = await target.fetch_value(
            "SELECT extversion FROM pg_extension WHERE extname = 'timescaledb'"
        )
        logger.info("TimescaleDB extension ready (version %s)", version)

    def _restore_options(self) -> dict:
        hypertable = self.classification.has_timescaledb
        jobs = self.settings.restore_jobs
        if hypertable and jobs and not self.settings.timescaledb_force_jobs:
            logger.info(
                "Parallel restore disabled for hypertable dump "
                "(set TIMESCALEDB_FORCE_JOBS to override)"
            )
            jobs = None
        return {
            "clean": not hypertable,
            "single_transaction": hypertable,
            "jobs": jobs,
        }

    async def _run_pg_restore(self, result: RestoreResult) -> None:
        logger.info("Restoring '%s' from %s", self.database, self.artifacts.dump)
        outcome = await self.tools.restore_dump(
            self.dsn, self.artifacts.dump, **self._restore_options()
        )
        result.restore_exit_code = outcome.returncode

        summary = classify_output(outcome.output)
        if summary.benign:
            logger.debug("pg_restore: %d expected message(s)", len(summary.benign))
        if outcome.ok:
            return

        message = f"pg_restore exited with code {outcome.returncode}"
        logger.warning("%s; verifying against the catalog", message)
        result.warnings.append(message)
        for line in summary.suspicious[:10]:
            logger.warning("  %s", line)

    async def _verify_tables(self, target: DatabaseClient, result: RestoreResult) -> None:
        restored = int(await target.fetch_value(RESTORED_TABLES_SQL) or 0)
        result.restored_tables = restored
        expected = self.classification.toc_table_count
        if expected is None:
            logger.info("Restored %d table(s)", restored)
            return
        if restored < expected:
            message = f"restored {restored} of {expected} tables listed in the backup"
            logger.warning(message)
            result.warnings.append(message)
        else:
            logger.info("Restored %d table(s) (%d in backup)", restored, expected)
