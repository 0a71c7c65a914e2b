"""Teardown helpers for a session's process, tasks and files.

None of these raise. Each logs what went wrong and returns False, so a
session close always runs every step and can be repeated.
"""

import asyncio
from pathlib import Path

import aiofiles.os

from console_bridge._logging import get_logger
from console_bridge.constants import KILL_TIMEOUT_SECONDS
from console_bridge.exceptions import SessionTeardownError
from console_bridge.platform_utils import ProcessWrapper, terminate_pid

logger = get_logger(__name__)


async def cleanup_process(
    proc: ProcessWrapper | None,
    name: str,
    context_id: str,
    term_timeout: float = 1.0,
    kill_timeout: float = KILL_TIMEOUT_SECONDS,
) -> bool:
    """Stop a child we spawned: SIGTERM, wait ``term_timeout``, then SIGKILL.

    Returns:
        True once the process has exited (or was never started)
    """
    if proc is None or proc.returncode is not None:
        return True

    steps = (("SIGTERM", proc.terminate, term_timeout), ("SIGKILL", proc.kill, kill_timeout))
    try:
        for signame, send, grace in steps:
            logger.debug(f"{signame} -> {name}", extra={"context_id": context_id, "pid": proc.pid})
            await send()
            try:
                code = await proc.wait_with_timeout(timeout=grace)
            except TimeoutError:
                continue
            log = logger.debug if signame == "SIGTERM" else logger.warning
            log(f"{name} exited after {signame}", extra={"context_id": context_id, "returncode": code})
            return True
    except ProcessLookupError:
        return True
    except Exception as e:
        logger.error(
            f"{name} teardown failed",
            extra={"context_id": context_id, "error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return False

    logger.error(f"{name} survived SIGKILL", extra={"context_id": context_id, "pid": proc.pid})
    return False


async def cleanup_pid(
    pid: int,
    name: str,
    term_timeout: float = 1.0,
    kill_timeout: float = KILL_TIMEOUT_SECONDS,
) -> bool:
    """Stop a process known only from the state file. Already gone is success."""
    try:
        await terminate_pid(pid, term_timeout, kill_timeout)
    except SessionTeardownError:
        logger.debug(f"{name} was not running", extra={"pid": pid})
    except Exception as e:
        logger.error(
            f"{name} teardown failed",
            extra={"pid": pid, "error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return False
    return True


async def cleanup_task(task: asyncio.Task[None] | None, name: str) -> bool:
    """Cancel a background task and wait until it has unwound."""
    if task is None or task.done():
        return True

    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        return True
    except Exception as e:
        logger.warning(f"{name} raised while cancelling", extra={"error": str(e), "error_type": type(e).__name__})
        return False
    return True


async def cleanup_file(file_path: Path | None, context_id: str, description: str = "file") -> bool:
    """Remove a session file; a missing file counts as removed."""
    if file_path is None:
        return True

    try:
        await aiofiles.os.remove(file_path)
    except FileNotFoundError:
        return True
    except OSError as e:
        logger.error(
            f"Could not remove {description}",
            extra={"context_id": context_id, "path": str(file_path), "error": str(e)},
        )
        return False
    logger.debug(f"Removed {description}", extra={"context_id": context_id, "path": str(file_path)})
    return True
