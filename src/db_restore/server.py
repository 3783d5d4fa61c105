"""Launcher for the postgres container entrypoint.

When ``db-restore restore --start-server`` is the container command, the CLI
owns the database server: it starts ``docker-entrypoint.sh postgres`` in the
background, runs the restore once the server is ready, and then waits on the
server so the container stays up.
"""

import asyncio
import logging
import signal

from db_restore.config.models import ServerSettings
from db_restore.tools import ToolNotFoundError

logger = logging.getLogger(__name__)


class ServerProcess:
    """A postgres server started from ``ServerSettings``."""

    def __init__(self, settings: ServerSettings) -> None:
        self._settings = settings
        self._process: asyncio.subprocess.Process | None = None

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self) -> None:
        """Start the server in the background.

        Raises:
            RuntimeError: If the server was already started.
            ToolNotFoundError: If the entrypoint cannot be executed.
        """
        if self._process is not None:
            raise RuntimeError("Server already started")
        argv = self._settings.argv()
        logger.info("Starting database server: %s", " ".join(argv))
        try:
            self._process = await asyncio.create_subprocess_exec(*argv)
        except (FileNotFoundError, PermissionError) as e:
            raise ToolNotFoundError(f"Cannot run {argv[0]}: {e}") from e

    async def wait(self) -> int:
        """Block until the server exits and return its exit code."""
        if self._process is None:
            raise RuntimeError("Server not started")
        returncode = await self._process.wait()
        logger.info("Database server exited with code %s", returncode)
        return returncode

    async def stop(self, timeout: float = 30.0) -> int | None:
        """Ask the server for a fast shutdown; kill it after ``timeout``."""
        if not self.running:
            return self._process.returncode if self._process else None
        assert self._process is not None
        # SIGINT is postgres "fast" shutdown
        self._process.send_signal(signal.SIGINT)
        try:
            return await asyncio.wait_for(self._process.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning("Database server did not stop within %ss, killing", timeout)
            self._process.kill()
            return await self._process.wait()
