"""Console device discovery from the hypervisor startup log.

QEMU allocates the serial PTY at startup and prints
``char device redirected to /dev/pts/N (label serial0)``. The line may be
printed more than once across restarts of the same log, so the last
occurrence wins, and the path must exist at scan time.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Callable
from pathlib import Path

import aiofiles

from console_bridge._logging import get_logger
from console_bridge.constants import DISCOVERY_ATTEMPTS, DISCOVERY_INTERVAL_SECONDS, PTY_ANNOUNCE_PATTERN
from console_bridge.exceptions import DiscoveryTimeoutError

logger = get_logger(__name__)


def parse_console_device(text: str, pattern: str = PTY_ANNOUNCE_PATTERN) -> Path | None:
    """Return the device path from the last announcement in *text*, if any."""
    matches = re.findall(pattern, text)
    if not matches:
        return None
    last = matches[-1]
    if isinstance(last, tuple):  # pattern with several groups: first is the path
        last = last[0]
    return Path(last)


async def find_console_device(
    boot_log: Path,
    *,
    attempts: int = DISCOVERY_ATTEMPTS,
    interval: float = DISCOVERY_INTERVAL_SECONDS,
    pattern: str = PTY_ANNOUNCE_PATTERN,
    abort_check: Callable[[], None] | None = None,
) -> Path:
    """Scan the startup log until it announces an existing console device.

    Args:
        boot_log: QEMU stdout/stderr log
        attempts: Number of scans before giving up
        interval: Seconds between scans
        pattern: Regex whose first group is the device path
        abort_check: Optional callable invoked before each scan; raise to abort
            (e.g. when QEMU has already exited)

    Returns:
        Path of the console device

    Raises:
        DiscoveryTimeoutError: No existing device was announced within the attempts
    """
    last_seen: Path | None = None
    for attempt in range(1, attempts + 1):
        if abort_check is not None:
            abort_check()
        try:
            async with aiofiles.open(boot_log, errors="replace") as f:
                text = await f.read()
        except FileNotFoundError:
            text = ""

        device = parse_console_device(text, pattern)
        if device is not None:
            last_seen = device
            if device.exists():
                logger.info("Guest serial console discovered", extra={"device": str(device), "attempt": attempt})
                return device
            logger.debug("Announced console device missing", extra={"device": str(device), "attempt": attempt})

        if attempt < attempts:
            await asyncio.sleep(interval)

    raise DiscoveryTimeoutError(
        f"Could not discover guest console device from {boot_log}",
        {
            "boot_log": str(boot_log),
            "attempts": attempts,
            "interval": interval,
            "last_announced": str(last_seen) if last_seen else None,
        },
    )
