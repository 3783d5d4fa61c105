"""Backups with TimescaleDB companion files.

Produces the ``bkp_YYYY_MM_DD_N`` directories that the restore side reads.

Usage:
    from db_restore.backup import backup_databases, next_backup_dir
"""

from db_restore.backup.dump import (
    backup_database,
    backup_databases,
    export_roles,
    export_timescaledb_metadata,
    next_backup_dir,
)
from db_restore.backup.models import BackupRun, DatabaseBackup, TimescaleDBMetadata

__all__ = [
    "BackupRun",
    "DatabaseBackup",
    "TimescaleDBMetadata",
    "backup_database",
    "backup_databases",
    "export_roles",
    "export_timescaledb_metadata",
    "next_backup_dir",
]
