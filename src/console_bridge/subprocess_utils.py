"""Helpers for the QEMU child process and the tasks that service it."""

from __future__ import annotations

import asyncio
import inspect
from typing import TYPE_CHECKING

from console_bridge._logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from pathlib import Path

    from console_bridge.platform_utils import ProcessWrapper

    LineHandler = Callable[[str], Awaitable[None] | None]

logger = get_logger(__name__)


async def drain_subprocess_output(
    process: ProcessWrapper,
    *,
    process_name: str,
    context_id: str,
    on_line: LineHandler | None = None,
) -> None:
    """Read the child's (stderr-merged) stdout line by line until EOF.

    QEMU blocks once its stdout pipe fills, which freezes the guest, so the
    pipe must be read for the whole life of the process. ``on_line`` may be
    a plain function or a coroutine function; without one, lines are logged
    at debug level.
    """
    stream = process.stdout
    if stream is None:
        return

    async for raw in stream:
        line = raw.decode(errors="replace").rstrip()
        if on_line is None:
            logger.debug(f"[{process_name}] {line}", extra={"context_id": context_id})
            continue
        outcome = on_line(line)
        if inspect.isawaitable(outcome):
            await outcome

    logger.debug(f"{process_name} output closed", extra={"context_id": context_id})


def log_task_exception(task: asyncio.Task[None]) -> None:
    """Done-callback that logs a background task's failure instead of losing it."""
    if task.cancelled() or task.exception() is None:
        return
    logger.error(
        "Background task failed",
        extra={"task_name": task.get_name()},
        exc_info=task.exception(),
    )


async def wait_for_socket(
    path: Path,
    *,
    timeout: float,
    poll_interval: float = 0.05,
    abort_check: Callable[[], None] | None = None,
) -> None:
    """Poll until a Unix socket accepts a connection.

    QEMU creates its QMP socket some time after exec; until then connecting
    fails with FileNotFoundError, and briefly with ConnectionRefusedError
    while the listener is being set up.

    Args:
        path: Socket file
        timeout: Seconds before giving up
        poll_interval: Seconds between attempts
        abort_check: Called before every attempt; raise from it to stop early

    Raises:
        TimeoutError: No connection succeeded within ``timeout``
    """
    async with asyncio.timeout(timeout):
        while True:
            if abort_check is not None:
                abort_check()
            try:
                _, writer = await asyncio.open_unix_connection(str(path))
            except (FileNotFoundError, ConnectionRefusedError, ConnectionResetError):
                await asyncio.sleep(poll_interval)
                continue
            writer.close()
            await writer.wait_closed()
            return
