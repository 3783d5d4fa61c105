"""Backup result models.

Usage:
    from db_restore.backup.models import BackupRun, DatabaseBackup

    run = await backup_databases(settings, Path("./backups"))
    for item in run.databases:
        print(item.database, item.table_count)
"""

from pathlib import Path

from pydantic import BaseModel, Field


class TimescaleDBMetadata(BaseModel):
    """Companion files written for a TimescaleDB database."""

    info: Path                      # <db>.timescaledb_info
    hypertables: Path               # <db>.hypertables.sql
    continuous_aggs: Path           # <db>.continuous_aggs.sql
    compression: Path               # <db>.compression.sql
    policies: Path                  # <db>.policies.sql
    excluded_views: list[str] = Field(default_factory=list)  # caggs left out of the dump


class DatabaseBackup(BaseModel):
    """One database dumped into a backup directory."""

    database: str
    dump: Path                      # <db>.bkp
    roles: Path                     # <db>.roles
    size_bytes: int = 0
    table_count: int | None = None  # TABLE entries in the dump's TOC
    timescaledb: TimescaleDBMetadata | None = None


class BackupRun(BaseModel):
    """All databases written into one ``bkp_YYYY_MM_DD_N`` directory."""

    directory: Path
    databases: list[DatabaseBackup] = Field(default_factory=list)
