"""Async wrappers around the PostgreSQL client binaries.

``pg_isready``, ``pg_restore``, ``pg_dump`` and ``psql`` are run as
``asyncio`` subprocesses.  Each call returns a ``ToolResult`` holding the exit
code and the merged stdout/stderr lines; callers decide what a non-zero exit
means.  ``pg_dump`` is the exception: its stdout is streamed into a file so
that the dump also works through a ``docker exec`` prefix.

Passwords never reach the argv: a connection URL argument is rewritten
without its password, which is handed over in ``PGPASSWORD`` instead.

Usage:
    from db_restore.tools import PgTools

    tools = PgTools(run_as=["gosu", "postgres"])
    result = await tools.restore_dump(dsn, Path("/backups/orders_db.bkp"), clean=True)
    if not result.ok:
        hint = classify_output(result.output)
"""

import asyncio
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

logger = logging.getLogger(__name__)


class ToolError(Exception):
    """Raised when a client binary fails where failure cannot be tolerated."""

    def __init__(self, message: str, result: "ToolResult | None" = None) -> None:
        super().__init__(message)
        self.result = result


class ToolNotFoundError(ToolError):
    """Raised when a client binary is not installed or not executable."""

    pass


@dataclass
class ToolResult:
    """Outcome of one client binary invocation."""

    args: list[str]
    returncode: int
    output: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def tail(self, lines: int = 20) -> list[str]:
        """Last ``lines`` lines of output."""
        return self.output[-lines:]


# ------------------------------------------------------------------
# Output classification (diagnostic hint only)
# ------------------------------------------------------------------

# Messages pg_restore/psql print for conditions that are expected when
# restoring into a database with the TimescaleDB extension pre-created.
BENIGN_OUTPUT_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"NOTICE:",
        r"WARNING:\s+column type",
        r'ERROR:\s+extension "timescaledb" has already been loaded',
        r'ERROR:\s+relation "_timescaledb_internal\._materialized_hypertable',
        r'ERROR:\s+relation ".*" already exists',
        r"already exists, skipping",
        r"does not exist at character",
        r"DETAIL:\s+Data for hypertables",
        r"DETAIL:\s+The loaded version is",
        r'HINT:\s+Use "COPY',
        r"HINT:\s+Start a new session",
        r"hypertable data are in the chunks",
    )
)

_PROBLEM_PATTERN = re.compile(r"\b(ERROR|FATAL|PANIC)\b|error:")


@dataclass
class OutputSummary:
    """Output lines split into expected noise and lines worth reading."""

    benign: list[str] = field(default_factory=list)
    suspicious: list[str] = field(default_factory=list)


def classify_output(lines: list[str]) -> OutputSummary:
    """Split tool output into benign and suspicious lines.

    A line is suspicious when it mentions ERROR/FATAL/PANIC and matches none
    of ``BENIGN_OUTPUT_PATTERNS``.  Informational lines are dropped.
    """
    summary = OutputSummary()
    for line in lines:
        if any(p.search(line) for p in BENIGN_OUTPUT_PATTERNS):
            summary.benign.append(line)
        elif _PROBLEM_PATTERN.search(line):
            summary.suspicious.append(line)
    return summary


# ------------------------------------------------------------------
# Runner
# ------------------------------------------------------------------


def strip_password(arg: str) -> tuple[str, str | None]:
    """Split the password off a ``postgresql://`` URL argument.

    Returns the argument unchanged (and ``None``) when it is not a URL or
    carries no password.
    """
    if not arg.startswith(("postgresql://", "postgres://")):
        return arg, None
    try:
        url = make_url(arg)
    except ArgumentError:
        return arg, None
    if url.password is None:
        return arg, None
    return url.set(password=None).render_as_string(hide_password=False), str(url.password)


class PgTools:
    """Runs PostgreSQL client binaries.

    Args:
        run_as: Command prefix for every binary, e.g. ``["gosu", "postgres"]``
            inside the container or ``["docker", "exec", "-i", "pg17"]`` on
            a host.
        bin_dir: Directory holding the binaries.  ``None`` uses ``PATH``.
    """

    def __init__(self, run_as: list[str] | None = None, bin_dir: Path | None = None) -> None:
        self._run_as = list(run_as or [])
        self._bin_dir = bin_dir

    def command(self, program: str, *args: str) -> list[str]:
        """Full argv for ``program`` including the ``run_as`` prefix."""
        binary = str(self._bin_dir / program) if self._bin_dir else program
        return [*self._run_as, binary, *args]

    def _prepare(self, program: str, args: tuple[str, ...]) -> tuple[list[str], dict[str, str] | None]:
        """Argv with passwords moved out of URL arguments, plus the child env."""
        password = None
        cleaned = []
        for arg in args:
            stripped, secret = strip_password(arg)
            cleaned.append(stripped)
            password = secret or password

        argv = self.command(program, *cleaned)
        if password is None:
            return argv, None
        if self._run_as[:2] == ["docker", "exec"]:
            # docker exec forwards a bare -e NAME from the client environment
            argv[2:2] = ["-e", "PGPASSWORD"]
        return argv, {**os.environ, "PGPASSWORD": password}

    async def run(self, program: str, *args: str) -> ToolResult:
        """Run ``program`` to completion, capturing merged output.

        Raises:
            ToolNotFoundError: If the executable cannot be started.
        """
        argv, env = self._prepare(program, args)
        logger.debug("Running %s", " ".join(argv))
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=env,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise ToolNotFoundError(f"Cannot run {argv[0]}: {e}") from e

        stdout, _ = await process.communicate()
        output = stdout.decode("utf-8", errors="replace").splitlines()
        return ToolResult(args=argv, returncode=process.returncode or 0, output=output)

    # ------------------------------------------------------------------
    # Specific tools
    # ------------------------------------------------------------------

    async def is_ready(self, dsn: str) -> bool:
        """``pg_isready -d <dsn>``; True when the server accepts connections."""
        result = await self.run("pg_isready", "-d", dsn)
        return result.ok

    async def list_contents(self, backup: Path) -> ToolResult:
        """``pg_restore --list``: the dump's table of contents."""
        return await self.run("pg_restore", "--list", str(backup))

    async def restore_dump(
        self,
        dsn: str,
        backup: Path,
        *,
        clean: bool = False,
        single_transaction: bool = False,
        jobs: int | None = None,
    ) -> ToolResult:
        """``pg_restore`` a custom-format dump into ``dsn``.

        ``--single-transaction`` and ``--jobs`` are mutually exclusive in
        pg_restore; when both are requested, jobs win.
        """
        args = ["--format=c", "--verbose"]
        if clean:
            args += ["--clean", "--if-exists"]
        if jobs:
            args.append(f"--jobs={jobs}")
        elif single_transaction:
            args.append("--single-transaction")
        args += ["--dbname", dsn, str(backup)]
        return await self.run("pg_restore", *args)

    async def run_sql_file(self, dsn: str, path: Path) -> ToolResult:
        """``psql -f``; statements after a failing one still run."""
        return await self.run("psql", "-v", "ON_ERROR_STOP=0", "-d", dsn, "-f", str(path))

    async def dump(
        self,
        dsn: str,
        output: Path,
        *,
        exclude_schemas: list[str] | None = None,
        exclude_tables: list[str] | None = None,
    ) -> ToolResult:
        """``pg_dump -F c -b`` streamed into ``output``.

        Only stderr is captured into ``ToolResult.output``.

        Raises:
            ToolNotFoundError: If ``pg_dump`` cannot be started.
        """
        args = ["-F", "c", "-b", "--no-publications", "--no-subscriptions"]
        for schema in exclude_schemas or []:
            args.append(f"--exclude-schema={schema}")
        for table in exclude_tables or []:
            args.append(f"--exclude-table={table}")
        args += ["-d", dsn]

        argv, env = self._prepare("pg_dump", tuple(args))
        logger.debug("Running %s > %s", " ".join(argv), output)
        with open(output, "wb") as out:
            try:
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    stdout=out,
                    stderr=asyncio.subprocess.PIPE,
                    env=env,
                )
            except (FileNotFoundError, PermissionError) as e:
                raise ToolNotFoundError(f"Cannot run {argv[0]}: {e}") from e
            _, stderr = await process.communicate()

        lines = stderr.decode("utf-8", errors="replace").splitlines()
        return ToolResult(args=argv, returncode=process.returncode or 0, output=lines)
