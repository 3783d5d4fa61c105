"""Pydantic models for restore configuration."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field


class ConfigurationError(Exception):
    """Raised when invocation arguments or settings are missing or invalid."""

    pass


# ============================================================================
# Configuration Models
# ============================================================================


class ServerSettings(BaseModel):
    """How to launch the postgres entrypoint when the CLI owns the server."""

    command: list[str] = Field(
        default_factory=lambda: ["docker-entrypoint.sh", "postgres"]
    )
    listen_addresses: str = "*"
    password_encryption: str = "scram-sha-256"
    hba_file: str | None = None  # HBA_FILE env var

    def argv(self) -> list[str]:
        """Full command line: entrypoint plus ``-c name=value`` settings."""
        args = list(self.command)
        args += ["-c", f"listen_addresses={self.listen_addresses}"]
        args += ["-c", f"password_encryption={self.password_encryption}"]
        if self.hba_file:
            args += ["-c", f"hba_file={self.hba_file}"]
        return args


class RestoreSettings(BaseModel):
    """Complete restore configuration from db-restore.toml and environment."""

    # Maintenance connection; the target database URL is derived from it
    admin_url: str = "postgresql://postgres@/postgres?host=/var/run/postgresql"
    backup_root: Path = Path("/docker-entrypoint-initdb.d")
    data_dir: Path = Path("/var/lib/postgresql/data")

    role_default_password: str | None = None  # ROLE_DEFAULT_PASSWORD
    restore_jobs: int | None = Field(default=None, ge=1)  # RESTORE_JOBS
    timescaledb_force_jobs: bool = False  # TIMESCALEDB_FORCE_JOBS

    # Prefix for every client binary, e.g. ["gosu", "postgres"]
    run_as: list[str] = Field(default_factory=list)
    bin_dir: Path | None = None

    ready_interval: float = Field(default=1.0, gt=0)
    ready_timeout: float | None = 120.0  # None waits forever

    supplementary_failure_policy: Literal["continue", "abort"] = "continue"
    grant_schemas: list[str] = Field(default_factory=lambda: ["public"])
    report_table_limit: int = Field(default=20, ge=1)

    server: ServerSettings = Field(default_factory=ServerSettings)
