"""Tests for restore models: invocation parsing, artifact layout, reports."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from db_restore.config.models import ConfigurationError
from db_restore.restore.models import (
    BackupArtifacts,
    BackupClassification,
    HypertableInfo,
    RestoreJob,
    RestoreResult,
    RestoreState,
    VerificationReport,
    parse_roles_csv,
)


# ------------------------------------------------------------------
# RestoreJob
# ------------------------------------------------------------------


class TestRestoreJob:
    """``<database> <backup> [roles_csv] [force]``"""

    def test_minimal(self) -> None:
        job = RestoreJob.from_invocation("orders_db", "bkp_2025_12_02_0")
        assert job.target_database == "orders_db"
        assert job.backup == "bkp_2025_12_02_0"
        assert job.roles == []
        assert job.force is False

    def test_roles_and_force(self) -> None:
        job = RestoreJob.from_invocation("orders_db", "b", " app_writer, ,reporter ", "force")
        assert job.roles == ["app_writer", "reporter"]
        assert job.force is True

    def test_empty_roles_with_force(self) -> None:
        """An empty third argument keeps the force slot usable."""
        job = RestoreJob.from_invocation("orders_db", "b", "", "force")
        assert job.roles == []
        assert job.force is True

    @pytest.mark.parametrize("database,backup", [(None, "b"), ("orders_db", None), ("", "b")])
    def test_missing_arguments(self, database, backup) -> None:
        with pytest.raises(ConfigurationError, match="Usage"):
            RestoreJob.from_invocation(database, backup)

    def test_bad_force_token(self) -> None:
        with pytest.raises(ConfigurationError, match="force"):
            RestoreJob.from_invocation("orders_db", "b", "app_writer", "yes")

    def test_database_name_with_slash_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            RestoreJob.from_invocation("../etc", "b")

    def test_database_name_length_limit(self) -> None:
        assert RestoreJob.from_invocation("x" * 63, "b").target_database == "x" * 63
        with pytest.raises(ConfigurationError, match="63 bytes"):
            RestoreJob.from_invocation("x" * 64, "b")

    def test_database_name_length_counts_bytes(self) -> None:
        # 32 two-byte characters
        with pytest.raises(ConfigurationError, match="63 bytes"):
            RestoreJob.from_invocation("é" * 32, "b")

    def test_frozen(self) -> None:
        job = RestoreJob.from_invocation("orders_db", "b")
        with pytest.raises(ValidationError):
            job.force = True

    def test_parse_roles_csv_keeps_duplicates(self) -> None:
        assert parse_roles_csv("a,b,a") == ["a", "b", "a"]


# ------------------------------------------------------------------
# BackupArtifacts
# ------------------------------------------------------------------


class TestBackupArtifacts:
    """Directory and single-file backup references."""

    def test_directory_reference(self, tmp_path: Path) -> None:
        (tmp_path / "bkp_2025_12_02_0").mkdir()
        artifacts = BackupArtifacts.locate(tmp_path, "bkp_2025_12_02_0", "orders_db")

        assert artifacts.directory == tmp_path / "bkp_2025_12_02_0"
        assert artifacts.dump == tmp_path / "bkp_2025_12_02_0" / "orders_db.bkp"
        assert artifacts.roles_file.name == "orders_db.roles"
        assert artifacts.hypertables_sql.name == "orders_db.hypertables.sql"
        assert artifacts.continuous_aggs_sql.name == "orders_db.continuous_aggs.sql"
        assert artifacts.compression_sql.name == "orders_db.compression.sql"
        assert artifacts.policies_sql.name == "orders_db.policies.sql"
        assert artifacts.timescaledb_info.name == "orders_db.timescaledb_info"

    def test_file_reference(self, tmp_path: Path) -> None:
        """A dump file path: companions sit beside it."""
        artifacts = BackupArtifacts.locate(tmp_path, "nightly/orders.bkp", "orders_db")

        assert artifacts.dump == tmp_path / "nightly" / "orders.bkp"
        assert artifacts.directory == tmp_path / "nightly"
        assert artifacts.roles_file == tmp_path / "nightly" / "orders_db.roles"

    def test_missing_directory_treated_as_file(self, tmp_path: Path) -> None:
        artifacts = BackupArtifacts.locate(tmp_path, "missing", "orders_db")
        assert artifacts.dump == tmp_path / "missing"
        assert not artifacts.dump.exists()


# ------------------------------------------------------------------
# Results
# ------------------------------------------------------------------


class TestResults:
    def test_classification_kind(self) -> None:
        assert BackupClassification().kind == "plain"
        assert BackupClassification(has_timescaledb=True, source="metadata").kind == "hypertable"

    @pytest.mark.parametrize(
        "state,success",
        [
            (RestoreState.COMPLETED, True),
            (RestoreState.SKIPPED, True),
            (RestoreState.FAILED, False),
            (RestoreState.RESTORING, False),
        ],
    )
    def test_success(self, state: RestoreState, success: bool) -> None:
        assert RestoreResult(database="d", state=state).success is success

    def test_state_values(self) -> None:
        assert RestoreState("completed") is RestoreState.COMPLETED


class TestVerificationReport:
    def test_plain_report(self) -> None:
        report = VerificationReport(database="orders_db", tables=["orders", "customers"], database_size="8 MB")
        text = report.format_report()

        assert "Database: orders_db" in text
        assert "Size: 8 MB" in text
        assert "orders, customers" in text
        assert "Hypertables" not in text

    def test_timescaledb_report(self) -> None:
        report = VerificationReport(
            database="metrics",
            hypertables=[HypertableInfo(schema_name="public", table_name="readings", num_chunks=12)],
            chunks=12,
            continuous_aggregates=None,
            policies=3,
            errors=["database size: boom"],
        )
        text = report.format_report()

        assert "Hypertables: 1" in text
        assert "public.readings: 12 chunks" in text
        assert "Continuous aggregates: unknown" in text
        assert "Policies: 3" in text
        assert "Error: database size: boom" in text
