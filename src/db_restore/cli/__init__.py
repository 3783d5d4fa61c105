"""CLI for restoring and backing up PostgreSQL / TimescaleDB databases.

Usage:
    db-restore restore orders_db orders_db.bkp app_writer
    db-restore restore orders_db bkp_2025_12_02_0 app_writer force
    db-restore restore orders_db orders_db.bkp --start-server
    db-restore detect orders_db orders_db.bkp
    db-restore grant orders_db app_writer --schemas public,reporting --reassign-objects
    db-restore verify orders_db
    db-restore backup --database orders_db --output ./backups
    db-restore config

Commands:
    restore   - Restore a database from a backup (idempotent, marker based)
    detect    - Classify a backup as plain or hypertable-bearing
    grant     - Apply schema privileges (and optionally ownership) to a role
    verify    - Print the verification report for a database
    backup    - Dump databases with roles and TimescaleDB companion files
    config    - Show the effective settings
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError

from db_restore.backup.dump import backup_databases
from db_restore.config.loader import load_restore_config
from db_restore.config.models import ConfigurationError, RestoreSettings
from db_restore.factory import get_adapter, resolve_url
from db_restore.restore.detect import classify_backup
from db_restore.restore.grants import apply_grants, reassign_schema_objects
from db_restore.restore.marker import RestoreInProgressError
from db_restore.restore.models import (
    BackupArtifacts,
    RestoreJob,
    RestoreResult,
    VerificationReport,
    validate_database_name,
)
from db_restore.restore.pipeline import ExtensionUnavailableError, run_restore
from db_restore.restore.readiness import ServerNotReadyError
from db_restore.restore.report import collect_report
from db_restore.server import ServerProcess
from db_restore.tools import PgTools, ToolError

console = Console()

logger = logging.getLogger("db_restore.cli")


# ============================================================================
# Setup helpers
# ============================================================================


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _load_settings(args: argparse.Namespace) -> RestoreSettings:
    config_path = Path(args.config) if getattr(args, "config", None) else None
    return load_restore_config(
        config_path=config_path, env_prefix=getattr(args, "env_prefix", "")
    )


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.replace(" ", ",").split(",") if part.strip()]


# ============================================================================
# Rendering
# ============================================================================


def _print_restore_result(result: RestoreResult) -> None:
    table = Table(title=f"Restore: {result.database}", show_header=False)
    table.add_column("Key", style="dim")
    table.add_column("Value")

    state_style = {
        "completed": "bold green",
        "skipped": "yellow",
        "failed": "bold red",
    }.get(result.state.value, "")
    state = result.state.value
    table.add_row("State", f"[{state_style}]{state}[/{state_style}]" if state_style else state)
    if result.skip_reason:
        table.add_row("Skip reason", result.skip_reason)
    if result.classification:
        table.add_row(
            "Backup type",
            f"{result.classification.kind} ({result.classification.source})",
        )
    if result.restore_exit_code is not None:
        table.add_row("pg_restore exit code", str(result.restore_exit_code))
    if result.restored_tables is not None:
        table.add_row("Restored tables", str(result.restored_tables))
    for step in result.steps:
        count = f" ({step.count})" if step.count is not None else ""
        table.add_row(f"Step {step.name}", f"{step.status}{count}")
    if result.marker_path:
        table.add_row("Marker", str(result.marker_path))
    console.print(table)

    for warning in result.warnings:
        console.print(f"[yellow]! {warning}[/yellow]")
    if result.error:
        console.print(f"[bold red]x[/bold red] {result.error}")


def _print_report(report: VerificationReport) -> None:
    table = Table(title=f"Verification: {report.database}", show_header=False)
    table.add_column("Key", style="dim")
    table.add_column("Value")
    table.add_row("Size", report.database_size or "unknown")
    table.add_row("Tables", ", ".join(report.tables) or "-")
    if report.hypertables is not None:
        table.add_row("Hypertables", str(len(report.hypertables)))
        for ht in report.hypertables:
            table.add_row("", f"{ht.schema_name}.{ht.table_name}: {ht.num_chunks} chunks")
        table.add_row("Chunks", str(report.chunks))
        table.add_row("Continuous aggregates", str(report.continuous_aggregates))
        table.add_row("Policies", str(report.policies))
    console.print(table)
    for error in report.errors:
        console.print(f"[yellow]! {error}[/yellow]")


# ============================================================================
# Async command implementations
# ============================================================================


async def _async_restore(args: argparse.Namespace) -> int:
    """Async implementation for restore command.

    With ``--start-server`` the postgres entrypoint is started first and
    kept in the foreground once the restore finishes, so the command can
    be a container's main process.

    Returns:
        0 when the restore completed or was skipped, 1 otherwise.  With
        ``--start-server`` the server's exit code once it stops.
    """
    try:
        settings = _load_settings(args)
        job = RestoreJob.from_invocation(args.database, args.backup, args.roles, args.force)
    except (ConfigurationError, FileNotFoundError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    server = ServerProcess(settings.server) if args.start_server else None
    if server:
        try:
            await server.start()
        except ToolError as e:
            console.print(f"[bold red]x[/bold red] {e}")
            return 1

    try:
        exit_code = await _restore_once(job, settings)
    except BaseException:
        if server:
            await server.stop()
        raise

    if server:
        console.print("[dim]Database server running in the foreground[/dim]")
        server_code = await server.wait()
        return server_code if exit_code == 0 else exit_code
    return exit_code


async def _restore_once(job: RestoreJob, settings: RestoreSettings) -> int:
    console.print(
        f"Restoring [bold cyan]{job.target_database}[/bold cyan] "
        f"from [bold]{job.backup}[/bold]"
        + (" [yellow](force)[/yellow]" if job.force else "")
    )
    try:
        result = await run_restore(job, settings)
    except (
        ConfigurationError,
        ServerNotReadyError,
        RestoreInProgressError,
        ExtensionUnavailableError,
        ToolError,
    ) as e:
        console.print(f"\n[bold red]x[/bold red] {e}")
        return 1
    except (SQLAlchemyError, OSError) as e:
        console.print(f"\n[bold red]x[/bold red] Restore failed: {e}")
        return 1

    console.print()
    _print_restore_result(result.restore)
    if result.report:
        _print_report(result.report)
    return 0 if result.success else 1


async def _async_detect(args: argparse.Namespace) -> int:
    """Async implementation for detect command."""
    try:
        settings = _load_settings(args)
        validate_database_name(args.database)
    except (ConfigurationError, FileNotFoundError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    artifacts = BackupArtifacts.locate(settings.backup_root, args.backup, args.database)
    if not artifacts.dump.is_file():
        console.print(f"[red]Backup file not found: {artifacts.dump}[/red]")
        return 1

    tools = PgTools(run_as=settings.run_as, bin_dir=settings.bin_dir)
    classification = await classify_backup(artifacts, tools)

    table = Table(title=f"Backup: {artifacts.dump.name}", show_header=False)
    table.add_column("Key", style="dim")
    table.add_column("Value")
    table.add_row("Type", f"[bold]{classification.kind}[/bold]")
    table.add_row("Evidence", classification.source)
    if classification.toc_table_count is not None:
        table.add_row("Tables in backup", str(classification.toc_table_count))
    for label, path in (
        ("Roles file", artifacts.roles_file),
        ("Hypertables SQL", artifacts.hypertables_sql),
        ("Continuous aggregates SQL", artifacts.continuous_aggs_sql),
        ("Compression SQL", artifacts.compression_sql),
        ("Policies SQL", artifacts.policies_sql),
    ):
        table.add_row(label, "[green]present[/green]" if path.is_file() else "[dim]absent[/dim]")
    console.print(table)
    return 0


async def _async_grant(args: argparse.Namespace) -> int:
    """Async implementation for grant command."""
    try:
        settings = _load_settings(args)
        validate_database_name(args.database)
    except (ConfigurationError, FileNotFoundError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    schemas = _split_csv(args.schemas) or ["public"]
    console.print(
        f"Applying ownership & privileges on [bold cyan]{args.database}[/bold cyan] "
        f"for [bold]{args.role}[/bold] in schemas: {', '.join(schemas)}"
    )

    target = get_adapter(settings, args.database)
    try:
        if args.reassign_objects:
            for schema in schemas:
                count = await reassign_schema_objects(target, schema, args.role)
                console.print(f"  {schema}: {count} object(s) reassigned")
        await apply_grants(target, [args.role], schemas, timescaledb=args.timescaledb)
    except Exception as e:
        console.print(f"\n[bold red]x[/bold red] Grant failed: {e}")
        return 1
    finally:
        await target.close()

    console.print("[bold green]v[/bold green] Done.")
    return 0


async def _async_verify(args: argparse.Namespace) -> int:
    """Async implementation for verify command."""
    try:
        settings = _load_settings(args)
        validate_database_name(args.database)
    except (ConfigurationError, FileNotFoundError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    target = get_adapter(settings, args.database)
    try:
        timescaledb = args.timescaledb
        if timescaledb is None:
            try:
                timescaledb = (
                    await target.fetch_value(
                        "SELECT 1 FROM pg_extension WHERE extname = 'timescaledb'"
                    )
                ) is not None
            except Exception as e:
                console.print(f"[red]Cannot connect to {args.database}: {e}[/red]")
                return 1
        report = await collect_report(
            target,
            args.database,
            timescaledb=timescaledb,
            table_limit=settings.report_table_limit,
        )
    finally:
        await target.close()

    _print_report(report)
    return 0 if not report.errors else 1


async def _async_backup(args: argparse.Namespace) -> int:
    """Async implementation for backup command."""
    try:
        settings = _load_settings(args)
        databases = _split_csv(args.database)
        for name in databases:
            validate_database_name(name)
    except (ConfigurationError, FileNotFoundError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    output = Path(args.output)
    output.mkdir(parents=True, exist_ok=True)
    try:
        run = await backup_databases(settings, output, databases or None, args.roles)
    except ToolError as e:
        console.print(f"\n[bold red]x[/bold red] Backup failed: {e}")
        return 1

    table = Table(title=f"Backup: {run.directory}", show_header=True, header_style="bold")
    table.add_column("Database")
    table.add_column("Type")
    table.add_column("Tables", justify="right")
    table.add_column("Size", justify="right")
    for item in run.databases:
        table.add_row(
            item.database,
            "timescaledb" if item.timescaledb else "plain",
            str(item.table_count) if item.table_count is not None else "-",
            f"{item.size_bytes / 1024:.1f} KiB",
        )
    console.print(table)
    console.print(f"[bold green]v[/bold green] Files in: {run.directory}")
    return 0


# ============================================================================
# Sync command wrappers
# ============================================================================


def cmd_restore(args: argparse.Namespace) -> int:
    """Restore a database from a backup.

    Wraps the async implementation with ``asyncio.run()``.
    """
    return asyncio.run(_async_restore(args))


def cmd_detect(args: argparse.Namespace) -> int:
    """Classify a backup.  Wraps the async implementation with ``asyncio.run()``."""
    return asyncio.run(_async_detect(args))


def cmd_grant(args: argparse.Namespace) -> int:
    """Apply schema privileges.  Wraps the async implementation with ``asyncio.run()``."""
    return asyncio.run(_async_grant(args))


def cmd_verify(args: argparse.Namespace) -> int:
    """Print a verification report.  Wraps the async implementation with ``asyncio.run()``."""
    return asyncio.run(_async_verify(args))


def cmd_backup(args: argparse.Namespace) -> int:
    """Back up databases.  Wraps the async implementation with ``asyncio.run()``."""
    return asyncio.run(_async_backup(args))


def cmd_config(args: argparse.Namespace) -> int:
    """Show the effective settings.

    Reads only local TOML config and environment -- no database calls.

    Returns:
        0 on success, 1 if the configuration is invalid.
    """
    try:
        settings = _load_settings(args)
    except (ConfigurationError, FileNotFoundError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    table = Table(title="Restore Settings", show_header=False)
    table.add_column("Key", style="dim")
    table.add_column("Value")
    table.add_row("Admin URL", _display_url(settings.admin_url))
    table.add_row("Backup root", str(settings.backup_root))
    table.add_row("Data directory", str(settings.data_dir))
    table.add_row(
        "Role default password",
        "[green]set[/green]" if settings.role_default_password else "[yellow]not set[/yellow]",
    )
    table.add_row("Restore jobs", str(settings.restore_jobs or "-"))
    table.add_row("TimescaleDB force jobs", "yes" if settings.timescaledb_force_jobs else "no")
    table.add_row("Run as", " ".join(settings.run_as) or "-")
    table.add_row("Ready timeout", f"{settings.ready_timeout}s" if settings.ready_timeout else "none")
    table.add_row("Supplementary failure policy", settings.supplementary_failure_policy)
    table.add_row("Grant schemas", ", ".join(settings.grant_schemas))
    table.add_row("Server command", " ".join(settings.server.argv()))
    console.print(table)
    return 0


def _display_url(url: str) -> str:
    """URL with the password masked."""
    return make_url(resolve_url(url)).render_as_string(hide_password=True)


# ============================================================================
# Main entry point
# ============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="db-restore",
        description="PostgreSQL / TimescaleDB backup and restore orchestration",
    )

    # Global options
    parser.add_argument(
        "--env-prefix",
        default="",
        help=(
            "Prefix for environment variable lookup "
            "(e.g., --env-prefix APP_ reads APP_RESTORE_JOBS)"
        ),
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a TOML settings file (default: ./db-restore.toml if present)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # restore command
    p_restore = subparsers.add_parser(
        "restore",
        help="Restore a database from a backup",
    )
    p_restore.add_argument("database", help="Target database name")
    p_restore.add_argument(
        "backup",
        help="Dump file or backup directory, relative to the backup root",
    )
    p_restore.add_argument(
        "roles",
        nargs="?",
        default=None,
        help="Comma-separated roles to create (default: <db>.roles beside the dump)",
    )
    p_restore.add_argument(
        "force",
        nargs="?",
        default=None,
        help="Literal 'force' to restore even if the marker exists",
    )
    p_restore.add_argument(
        "--start-server",
        action="store_true",
        help="Start the postgres entrypoint first and keep it in the foreground",
    )
    p_restore.set_defaults(func=cmd_restore)

    # detect command
    p_detect = subparsers.add_parser(
        "detect",
        help="Classify a backup as plain or hypertable-bearing",
    )
    p_detect.add_argument("database", help="Database name the backup belongs to")
    p_detect.add_argument("backup", help="Dump file or backup directory")
    p_detect.set_defaults(func=cmd_detect)

    # grant command
    p_grant = subparsers.add_parser(
        "grant",
        help="Apply schema privileges to a role",
    )
    p_grant.add_argument("database", help="Database name")
    p_grant.add_argument("role", help="Role to grant to (must exist)")
    p_grant.add_argument(
        "--schemas",
        default="public",
        help="Comma- or space-separated schemas (default: public)",
    )
    p_grant.add_argument(
        "--reassign-objects",
        action="store_true",
        help="Also transfer ownership of every object in the schemas",
    )
    p_grant.add_argument(
        "--timescaledb",
        action="store_true",
        help="Also grant access to TimescaleDB's internal schemas",
    )
    p_grant.set_defaults(func=cmd_grant)

    # verify command
    p_verify = subparsers.add_parser(
        "verify",
        help="Print the verification report for a database",
    )
    p_verify.add_argument("database", help="Database name")
    p_verify.add_argument(
        "--timescaledb",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Include TimescaleDB counts (default: detect the extension)",
    )
    p_verify.set_defaults(func=cmd_verify)

    # backup command
    p_backup = subparsers.add_parser(
        "backup",
        help="Dump databases with roles and TimescaleDB companion files",
    )
    p_backup.add_argument(
        "--database",
        "-db",
        default=None,
        help="Comma-separated databases (default: all non-template databases)",
    )
    p_backup.add_argument(
        "--roles",
        "-r",
        default=None,
        help="Comma-separated roles for the roles file (default: all non-system roles)",
    )
    p_backup.add_argument(
        "--output",
        "-d",
        default="./backups",
        help="Directory under which bkp_YYYY_MM_DD_N is created (default: ./backups)",
    )
    p_backup.set_defaults(func=cmd_backup)

    # config command
    p_config = subparsers.add_parser(
        "config",
        help="Show the effective settings",
    )
    p_config.set_defaults(func=cmd_config)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Parses command line arguments and dispatches to appropriate handler.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
