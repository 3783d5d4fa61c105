"""Restore data models.

Usage:
    from db_restore.restore.models import RestoreJob, BackupArtifacts

    job = RestoreJob.from_invocation("orders_db", "bkp_2025_12_02_0", "app_writer")
    artifacts = BackupArtifacts.locate(Path("/docker-entrypoint-initdb.d"), job.backup, job.target_database)
"""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from db_restore.config.models import ConfigurationError

FORCE_TOKEN = "force"

# NAMEDATALEN - 1
MAX_IDENTIFIER_BYTES = 63


# ============================================================================
# Invocation
# ============================================================================


class RestoreJob(BaseModel):
    """One restore request: target database, backup reference, roles, force."""

    model_config = ConfigDict(frozen=True)

    target_database: str
    backup: str                                     # dir or file, relative to the backup mount
    roles: list[str] = Field(default_factory=list)  # empty means "use the roles file"
    force: bool = False

    @classmethod
    def from_invocation(
        cls,
        database: str | None,
        backup: str | None,
        roles_csv: str | None = None,
        force_token: str | None = None,
    ) -> "RestoreJob":
        """Build a job from the positional command-line contract.

        ``<database> <backup> [roles_csv] [force]``

        Raises:
            ConfigurationError: If database or backup is missing, the database
                name is unusable as a file name, or the fourth argument is
                anything other than ``force``.
        """
        if not database or not backup:
            raise ConfigurationError("Usage: <target_db> <backup> [role1,role2,...] [force]")
        validate_database_name(database)
        if force_token not in (None, "", FORCE_TOKEN):
            raise ConfigurationError(
                f"Fourth argument must be '{FORCE_TOKEN}', got {force_token!r}"
            )
        roles = parse_roles_csv(roles_csv) if roles_csv else []
        return cls(
            target_database=database,
            backup=backup,
            roles=roles,
            force=force_token == FORCE_TOKEN,
        )


def validate_database_name(name: str) -> str:
    """Reject names that cannot be used in marker and companion file names.

    Names longer than ``NAMEDATALEN - 1`` bytes are rejected too: PostgreSQL
    would silently truncate them and the existence check would never match.
    """
    if not name or "/" in name or "\x00" in name:
        raise ConfigurationError(f"Invalid database name: {name!r}")
    if len(name.encode("utf-8")) > MAX_IDENTIFIER_BYTES:
        raise ConfigurationError(
            f"Database name {name!r} is longer than {MAX_IDENTIFIER_BYTES} bytes"
        )
    return name


def parse_roles_csv(text: str) -> list[str]:
    """Split a comma-separated role list; whitespace trimmed, empties dropped.

    Duplicates are kept; provisioning is idempotent.
    """
    return [part.strip() for part in text.split(",") if part.strip()]


# ============================================================================
# Backup artifacts
# ============================================================================


class BackupArtifacts(BaseModel):
    """Resolved paths of a dump and its companion files."""

    database: str
    directory: Path
    dump: Path

    @classmethod
    def locate(cls, backup_root: Path, backup_ref: str, database: str) -> "BackupArtifacts":
        """Resolve ``backup_ref`` under ``backup_root``.

        If the reference names a directory, the dump is ``<dir>/<db>.bkp``;
        otherwise the reference is the dump file itself and companions are
        looked up beside it.
        """
        candidate = backup_root / backup_ref
        if candidate.is_dir():
            return cls(database=database, directory=candidate, dump=candidate / f"{database}.bkp")
        return cls(database=database, directory=candidate.parent, dump=candidate)

    def companion(self, suffix: str) -> Path:
        return self.directory / f"{self.database}.{suffix}"

    @property
    def roles_file(self) -> Path:
        return self.companion("roles")

    @property
    def timescaledb_info(self) -> Path:
        return self.companion("timescaledb_info")

    @property
    def hypertables_sql(self) -> Path:
        return self.companion("hypertables.sql")

    @property
    def continuous_aggs_sql(self) -> Path:
        return self.companion("continuous_aggs.sql")

    @property
    def compression_sql(self) -> Path:
        return self.companion("compression.sql")

    @property
    def policies_sql(self) -> Path:
        return self.companion("policies.sql")


ClassificationSource = Literal["metadata", "toc-extension", "toc-hypertable", "none"]


class BackupClassification(BaseModel):
    """Whether a backup carries TimescaleDB objects, and how that was decided."""

    has_timescaledb: bool = False
    source: ClassificationSource = "none"
    toc_table_count: int | None = None  # TABLE entries in the dump's TOC

    @property
    def kind(self) -> str:
        return "hypertable" if self.has_timescaledb else "plain"


# ============================================================================
# Results
# ============================================================================


class RestoreState(str, Enum):
    NOT_STARTED = "not_started"
    SKIPPED = "skipped"
    RESTORING = "restoring"
    COMPLETED = "completed"
    FAILED = "failed"


class StepResult(BaseModel):
    """Outcome of one supplementary step."""

    name: str
    status: Literal["applied", "failed", "skipped"]
    count: int | None = None   # catalog count after the step
    detail: str | None = None


class RestoreResult(BaseModel):
    """Outcome of the orchestrator for one database."""

    database: str
    state: RestoreState = RestoreState.NOT_STARTED
    classification: BackupClassification | None = None
    skip_reason: str | None = None          # "marker-present" or "backup-missing"
    restore_exit_code: int | None = None
    restored_tables: int | None = None
    steps: list[StepResult] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    marker_path: Path | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.state in (RestoreState.COMPLETED, RestoreState.SKIPPED)


class HypertableInfo(BaseModel):
    schema_name: str
    table_name: str
    num_chunks: int = 0


class VerificationReport(BaseModel):
    """Read-only summary of a restored database."""

    database: str
    tables: list[str] = Field(default_factory=list)
    database_size: str | None = None
    hypertables: list[HypertableInfo] | None = None  # None for plain databases
    chunks: int | None = None
    continuous_aggregates: int | None = None
    policies: int | None = None
    errors: list[str] = Field(default_factory=list)

    def format_report(self) -> str:
        """Plain-text rendering for logs."""
        lines = [f"Database: {self.database}"]
        lines.append(f"Size: {self.database_size or 'unknown'}")
        lines.append(f"Tables ({len(self.tables)} shown): {', '.join(self.tables) or '-'}")
        if self.hypertables is not None:
            lines.append(f"Hypertables: {len(self.hypertables)}")
            for ht in self.hypertables:
                lines.append(f"  {ht.schema_name}.{ht.table_name}: {ht.num_chunks} chunks")
            lines.append(f"Chunks: {self.chunks if self.chunks is not None else 'unknown'}")
            lines.append(
                "Continuous aggregates: "
                f"{self.continuous_aggregates if self.continuous_aggregates is not None else 'unknown'}"
            )
            lines.append(f"Policies: {self.policies if self.policies is not None else 'unknown'}")
        for error in self.errors:
            lines.append(f"Error: {error}")
        return "\n".join(lines)


class PipelineResult(BaseModel):
    restore: RestoreResult
    report: VerificationReport | None = None

    @property
    def success(self) -> bool:
        return self.restore.success


class MarkerRecord(BaseModel):
    """JSON body of the restore marker file."""

    database: str
    backup: str
    restored_at: datetime
    kind: str = "plain"
