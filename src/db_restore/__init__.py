"""db-restore: PostgreSQL / TimescaleDB restore orchestration for containers.

Restores custom-format dumps idempotently (marker file per database),
provisions roles, re-creates TimescaleDB hypertables, continuous aggregates,
compression settings and policies from companion SQL files, applies schema
grants, and reports on the result.  The backup side writes the same layout.

Usage:
    from db_restore import RestoreJob, load_restore_config, run_restore
    from db_restore import backup_databases
"""

__version__ = "0.1.0"

# Adapters
from db_restore.adapters.base import DatabaseClient
from db_restore.adapters.postgres import AsyncPostgresAdapter

# Config
from db_restore.config.loader import load_restore_config
from db_restore.config.models import ConfigurationError, RestoreSettings, ServerSettings

# Factory
from db_restore.factory import connection_factory, get_adapter, resolve_url

# Tools
from db_restore.tools import PgTools, ToolError, ToolNotFoundError

# Restore
from db_restore.restore import (
    BackupArtifacts,
    BackupClassification,
    ExtensionUnavailableError,
    PipelineResult,
    RestoreInProgressError,
    RestoreJob,
    RestoreOrchestrator,
    RestoreResult,
    RestoreState,
    ServerNotReadyError,
    SupplementaryStepError,
    VerificationReport,
    run_restore,
)

# Backup
from db_restore.backup import BackupRun, backup_databases

__all__ = [
    # Adapters
    "DatabaseClient",
    "AsyncPostgresAdapter",
    # Config
    "load_restore_config",
    "ConfigurationError",
    "RestoreSettings",
    "ServerSettings",
    # Factory
    "get_adapter",
    "connection_factory",
    "resolve_url",
    # Tools
    "PgTools",
    "ToolError",
    "ToolNotFoundError",
    # Restore
    "RestoreJob",
    "BackupArtifacts",
    "BackupClassification",
    "RestoreState",
    "RestoreResult",
    "VerificationReport",
    "PipelineResult",
    "RestoreOrchestrator",
    "run_restore",
    "ServerNotReadyError",
    "RestoreInProgressError",
    "ExtensionUnavailableError",
    "SupplementaryStepError",
    # Backup
    "BackupRun",
    "backup_databases",
]
