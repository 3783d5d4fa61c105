"""Tests for the ``db-restore`` command line.

Verifies that the CLI:
- Uses ``db-restore`` as program name
- Accepts the positional ``<database> <backup> [roles] [force]`` contract
- Wraps async handlers via ``asyncio.run()``
- Maps pipeline errors to exit code 1
- Library modules never ``print``; output belongs to the CLI
"""

import ast
import inspect
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from db_restore.cli import (
    _display_url,
    build_parser,
    cmd_backup,
    cmd_config,
    cmd_detect,
    cmd_grant,
    cmd_restore,
    cmd_verify,
    main,
)
from db_restore.restore.models import (
    BackupClassification,
    PipelineResult,
    RestoreResult,
    RestoreState,
    VerificationReport,
)
from db_restore.restore.readiness import ServerNotReadyError
from db_restore.tools import ToolError

PACKAGE_DIR = Path(__file__).parent.parent / "src" / "db_restore"
CLI_INIT_PY = PACKAGE_DIR / "cli" / "__init__.py"

PREFIX = "DBRESTORE_TEST_"


@pytest.fixture
def env(tmp_path: Path, monkeypatch) -> Path:
    """Isolated environment: prefixed variables and no config file in cwd."""
    monkeypatch.chdir(tmp_path)
    backup_root = tmp_path / "backups"
    backup_root.mkdir()
    monkeypatch.setenv(f"{PREFIX}DB_RESTORE_BACKUP_ROOT", str(backup_root))
    monkeypatch.setenv(f"{PREFIX}DB_RESTORE_DATA_DIR", str(tmp_path / "data"))
    return backup_root


def run(*argv: str) -> int:
    return main(["--env-prefix", PREFIX, *argv])


# ------------------------------------------------------------------
# Parser
# ------------------------------------------------------------------


class TestParser:
    """Argument layout."""

    def test_prog_name(self):
        assert build_parser().prog == "db-restore"

    def test_restore_positionals(self):
        args = build_parser().parse_args(["restore", "orders_db", "bkp_2025_12_02_0", "app_writer", "force"])
        assert args.database == "orders_db"
        assert args.backup == "bkp_2025_12_02_0"
        assert args.roles == "app_writer"
        assert args.force == "force"
        assert args.start_server is False

    def test_restore_optional_positionals(self):
        args = build_parser().parse_args(["restore", "orders_db", "orders_db.bkp"])
        assert args.roles is None
        assert args.force is None

    def test_restore_requires_backup(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["restore", "orders_db"])

    def test_backup_short_options(self):
        args = build_parser().parse_args(["backup", "-db", "orders_db", "-r", "app_writer", "-d", "/out"])
        assert args.database == "orders_db"
        assert args.roles == "app_writer"
        assert args.output == "/out"

    def test_verify_timescaledb_tristate(self):
        parser = build_parser()
        assert parser.parse_args(["verify", "metrics"]).timescaledb is None
        assert parser.parse_args(["verify", "metrics", "--timescaledb"]).timescaledb is True
        assert parser.parse_args(["verify", "metrics", "--no-timescaledb"]).timescaledb is False

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestAsyncWrapping:
    """cmd_* functions wrap async handlers via asyncio.run()."""

    @pytest.mark.parametrize("command", [cmd_restore, cmd_detect, cmd_grant, cmd_verify, cmd_backup])
    def test_calls_asyncio_run(self, command):
        assert "asyncio.run" in inspect.getsource(command)

    def test_config_is_sync(self):
        """cmd_config reads local settings only."""
        assert "asyncio.run" not in inspect.getsource(cmd_config)


# ------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------


class TestRestoreCommand:
    """Exit codes of ``db-restore restore``."""

    def test_completed(self, env):
        result = PipelineResult(
            restore=RestoreResult(database="orders_db", state=RestoreState.COMPLETED),
            report=VerificationReport(database="orders_db", tables=["orders"]),
        )
        with patch("db_restore.cli.run_restore", new=AsyncMock(return_value=result)) as mock_run:
            assert run("restore", "orders_db", "orders_db.bkp", "app_writer") == 0

        job = mock_run.await_args.args[0]
        assert job.target_database == "orders_db"
        assert job.roles == ["app_writer"]
        assert job.force is False

    def test_skipped_is_success(self, env):
        result = PipelineResult(
            restore=RestoreResult(
                database="orders_db", state=RestoreState.SKIPPED, skip_reason="marker-present"
            )
        )
        with patch("db_restore.cli.run_restore", new=AsyncMock(return_value=result)):
            assert run("restore", "orders_db", "orders_db.bkp") == 0

    def test_failed(self, env):
        result = PipelineResult(
            restore=RestoreResult(database="orders_db", state=RestoreState.FAILED, error="RuntimeError: x")
        )
        with patch("db_restore.cli.run_restore", new=AsyncMock(return_value=result)):
            assert run("restore", "orders_db", "orders_db.bkp") == 1

    def test_bad_force_token(self, env):
        with patch("db_restore.cli.run_restore", new=AsyncMock()) as mock_run:
            assert run("restore", "orders_db", "orders_db.bkp", "app_writer", "yes") == 1
        mock_run.assert_not_awaited()

    def test_server_not_ready(self, env):
        with patch(
            "db_restore.cli.run_restore",
            new=AsyncMock(side_effect=ServerNotReadyError("not ready after 120 attempts")),
        ):
            assert run("restore", "orders_db", "orders_db.bkp") == 1

    def test_database_error(self, env):
        with patch(
            "db_restore.cli.run_restore",
            new=AsyncMock(side_effect=SQLAlchemyError("permission denied to create role")),
        ):
            assert run("restore", "orders_db", "orders_db.bkp", "app_writer") == 1

    def test_connection_refused(self, env):
        with patch(
            "db_restore.cli.run_restore",
            new=AsyncMock(side_effect=ConnectionRefusedError(111, "Connection refused")),
        ):
            assert run("restore", "orders_db", "orders_db.bkp") == 1

    def test_name_too_long(self, env):
        with patch("db_restore.cli.run_restore", new=AsyncMock()) as mock_run:
            assert run("restore", "x" * 64, "orders_db.bkp") == 1
        mock_run.assert_not_awaited()


class TestGrantCommand:
    def test_reassign_then_grant(self, env):
        target = AsyncMock()
        with (
            patch("db_restore.cli.get_adapter", return_value=target),
            patch("db_restore.cli.reassign_schema_objects", new=AsyncMock(return_value=3)) as reassign,
            patch("db_restore.cli.apply_grants", new=AsyncMock()) as grants,
        ):
            assert run(
                "grant", "orders_db", "app_writer", "--schemas", "public,reporting", "--reassign-objects"
            ) == 0

        assert [c.args[1] for c in reassign.await_args_list] == ["public", "reporting"]
        grants.assert_awaited_once_with(target, ["app_writer"], ["public", "reporting"], timescaledb=False)
        target.close.assert_awaited_once()

    def test_failure(self, env):
        target = AsyncMock()
        with (
            patch("db_restore.cli.get_adapter", return_value=target),
            patch("db_restore.cli.apply_grants", new=AsyncMock(side_effect=SQLAlchemyError("role missing"))),
        ):
            assert run("grant", "orders_db", "app_writer") == 1
        target.close.assert_awaited_once()


class TestVerifyCommand:
    def test_detects_extension(self, env):
        target = AsyncMock()
        target.fetch_value.return_value = 1
        report = VerificationReport(database="metrics", tables=["readings"], hypertables=[])
        with (
            patch("db_restore.cli.get_adapter", return_value=target),
            patch("db_restore.cli.collect_report", new=AsyncMock(return_value=report)) as collect,
        ):
            assert run("verify", "metrics") == 0

        assert collect.await_args.kwargs["timescaledb"] is True

    def test_explicit_flag_skips_detection(self, env):
        target = AsyncMock()
        report = VerificationReport(database="orders_db", tables=["orders"])
        with (
            patch("db_restore.cli.get_adapter", return_value=target),
            patch("db_restore.cli.collect_report", new=AsyncMock(return_value=report)) as collect,
        ):
            assert run("verify", "orders_db", "--no-timescaledb") == 0

        target.fetch_value.assert_not_awaited()
        assert collect.await_args.kwargs["timescaledb"] is False

    def test_report_errors(self, env):
        report = VerificationReport(database="orders_db", errors=["size: permission denied"])
        with (
            patch("db_restore.cli.get_adapter", return_value=AsyncMock()),
            patch("db_restore.cli.collect_report", new=AsyncMock(return_value=report)),
        ):
            assert run("verify", "orders_db", "--no-timescaledb") == 1


class TestBackupCommand:
    def test_pg_dump_failure(self, env, tmp_path):
        with patch(
            "db_restore.cli.backup_databases",
            new=AsyncMock(side_effect=ToolError("pg_dump failed for orders_db")),
        ) as backup:
            assert run("backup", "-db", "orders_db", "-d", str(tmp_path / "out")) == 1

        assert backup.await_args.args[1:] == (tmp_path / "out", ["orders_db"], None)


class TestDetectCommand:
    def test_missing_dump(self, env):
        assert run("detect", "orders_db", "missing.bkp") == 1

    def test_classifies(self, env):
        (env / "orders_db.bkp").write_bytes(b"PGDMP")
        classification = BackupClassification(has_timescaledb=False, source="none", toc_table_count=2)
        with patch("db_restore.cli.classify_backup", new=AsyncMock(return_value=classification)):
            assert run("detect", "orders_db", "orders_db.bkp") == 0


class TestConfigCommand:
    def test_shows_settings(self, env):
        assert run("config") == 0

    def test_invalid_settings(self, env, monkeypatch):
        monkeypatch.setenv(f"{PREFIX}RESTORE_JOBS", "many")
        assert run("config") == 1

    def test_password_masked(self):
        assert _display_url("postgresql://postgres:secret@db:5432/postgres") == (
            "postgresql://postgres:***@db:5432/postgres"
        )


# ------------------------------------------------------------------
# Source inspection
# ------------------------------------------------------------------


class TestSourceStyle:
    """Library modules log; only the CLI writes to the console."""

    def test_no_print_outside_cli(self):
        offenders = []
        for path in PACKAGE_DIR.rglob("*.py"):
            if "cli" in path.relative_to(PACKAGE_DIR).parts:
                continue
            tree = ast.parse(path.read_text())
            for node in ast.walk(tree):
                if (
                    isinstance(node, ast.Call)
                    and isinstance(node.func, ast.Name)
                    and node.func.id == "print"
                ):
                    offenders.append(f"{path.name}:{node.lineno}")
        assert offenders == [], f"print() found in library code: {offenders}"

    def test_absolute_imports_in_cli(self):
        """cli/__init__.py imports only via db_restore.* paths."""
        tree = ast.parse(CLI_INIT_PY.read_text())
        for node in ast.walk(tree):
            if isinstance(node, ast.ImportFrom):
                assert node.level == 0, "relative import in cli/__init__.py"
                top_level = (node.module or "").split(".")[0]
                assert top_level not in {"restore", "backup", "config", "adapters", "tools"}, (
                    f"bare import 'from {node.module} import ...' in cli/__init__.py"
                )
