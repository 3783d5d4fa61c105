"""Wait for the database server to accept connections."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class ServerNotReadyError(Exception):
    """Raised when the server does not become ready within the timeout."""

    pass


async def wait_until_ready(
    probe: Callable[[], Awaitable[bool]],
    *,
    interval: float = 1.0,
    timeout: float | None = 120.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> int:
    """Call ``probe`` every ``interval`` seconds until it returns True.

    Args:
        probe: Async readiness check, e.g. ``pg_isready``.  ``OSError`` from
            the probe counts as "not ready".
        interval: Seconds between attempts.
        timeout: Total budget in seconds.  ``None`` waits forever.
        sleep: Injected for tests.
        clock: Injected for tests.

    Returns:
        Number of attempts made.

    Raises:
        ServerNotReadyError: If ``timeout`` elapses first.
    """
    deadline = None if timeout is None else clock() + timeout
    attempts = 0

    while True:
        attempts += 1
        try:
            ready = await probe()
        except OSError as e:
            logger.debug("Readiness probe failed: %s", e)
            ready = False

        if ready:
            logger.info("Database server is ready (attempt %d)", attempts)
            return attempts

        if deadline is not None and clock() + interval > deadline:
            raise ServerNotReadyError(
                f"Database server not ready after {attempts} attempts ({timeout}s)"
            )
        logger.debug("Waiting for database server (attempt %d)", attempts)
        await sleep(interval)
