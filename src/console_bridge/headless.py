"""Headless command channel: a named pipe forwarded to the guest console.

Anything written to the FIFO reaches the console verbatim, one line at a
time, with no markers and no output capture; results are read from the
transcript. Control bytes at the end of what has arrived (a lone ``\\x03``,
or one typed after a partial line) are forwarded immediately so a stuck
guest command can be interrupted.

The channel keeps its own write end of the FIFO open, so the read side
never sees EOF when a client disconnects.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import stat
from typing import TYPE_CHECKING

from console_bridge._logging import get_logger
from console_bridge.console import ConsoleDevice
from console_bridge.constants import READ_CHUNK_SIZE
from console_bridge.exceptions import ConsoleWriteError, PreconditionError

if TYPE_CHECKING:
    from pathlib import Path

logger = get_logger(__name__)


def ensure_fifo(path: Path) -> bool:
    """Create the FIFO if missing.

    Returns:
        True if it was created, False if an existing FIFO is reused

    Raises:
        PreconditionError: Path exists but is not a FIFO
    """
    try:
        mode = path.stat().st_mode
    except FileNotFoundError:
        path.parent.mkdir(parents=True, exist_ok=True)
        os.mkfifo(path, 0o600)
        logger.debug("Created FIFO", extra={"fifo": str(path)})
        return True
    if not stat.S_ISFIFO(mode):
        raise PreconditionError(f"{path} exists but is not a FIFO", {"fifo": str(path)})
    return False


def _is_control_only(data: bytes) -> bool:
    return all(b < 0x20 or b == 0x7F for b in data)


def _split_trailing_control(data: bytes) -> tuple[bytes, bytes]:
    """Split ``data`` into (text, trailing run of control bytes)."""
    end = len(data)
    while end and _is_control_only(data[end - 1 : end]):
        end -= 1
    return data[:end], data[end:]


class HeadlessChannel:
    """Long-lived FIFO to console forwarder.

    Complete lines are queued and written while holding ``write_lock`` (the
    session's run lock), so a line never lands in the middle of a bridge
    command. Control bytes skip the queue and the lock: a ``\\x03`` has to
    reach the very command that holds it.
    """

    def __init__(self, fifo: Path, console: ConsoleDevice, *, write_lock: asyncio.Lock | None = None) -> None:
        self.fifo = fifo
        self.console = console
        self.write_lock = write_lock if write_lock is not None else asyncio.Lock()
        self.lines_forwarded = 0
        self._lines: asyncio.Queue[bytes] = asyncio.Queue()

    async def _forward(self, data: bytes) -> None:
        try:
            await self.console.write(data)
        except ConsoleWriteError as e:
            # Channel stays up; the next line may find the console again
            logger.error("Dropped headless input", extra={"error": e.message, "bytes": len(data)})

    async def _forward_lines(self) -> None:
        while True:
            line = await self._lines.get()
            try:
                async with self.write_lock:
                    await self._forward(line)
                self.lines_forwarded += 1
            finally:
                self._lines.task_done()

    async def run(self) -> None:
        """Drain the FIFO into the console until cancelled."""
        ensure_fifo(self.fifo)
        read_fd = os.open(self.fifo, os.O_RDONLY | os.O_NONBLOCK)
        keepalive_fd = os.open(self.fifo, os.O_WRONLY | os.O_NONBLOCK)
        pipe = os.fdopen(read_fd, "rb", buffering=0)

        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        transport, _ = await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), pipe)
        writer = asyncio.create_task(self._forward_lines(), name=f"headless-lines-{self.fifo.name}")
        logger.info("Headless channel listening", extra={"fifo": str(self.fifo)})

        pending = b""
        try:
            while True:
                chunk = await reader.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                pending += chunk
                *lines, pending = pending.split(b"\n")
                for line in lines:
                    self._lines.put_nowait(line + b"\n")
                pending, control = _split_trailing_control(pending)
                if control:
                    if not self.write_lock.locked():
                        # Nothing in flight: keep FIFO order behind queued lines
                        await self._lines.join()
                    await self._forward(control)
        finally:
            writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await writer
            transport.close()
            os.close(keepalive_fd)


# -----------------------------------------------------------------------------
# Client helpers
# -----------------------------------------------------------------------------


def _require_fifo(fifo: Path) -> None:
    try:
        mode = fifo.stat().st_mode
    except FileNotFoundError as e:
        raise PreconditionError(f"Headless FIFO not found: {fifo}", {"fifo": str(fifo)}) from e
    if not stat.S_ISFIFO(mode):
        raise PreconditionError(f"{fifo} is not a FIFO", {"fifo": str(fifo)})


async def send_bytes(fifo: Path, data: bytes, *, retries: int = 3, backoff: float = 0.2) -> None:
    """Write raw bytes into a running session's headless channel.

    Raises:
        PreconditionError: FIFO missing or not a FIFO
        ConsoleWriteError: No channel is reading the FIFO
    """
    _require_fifo(fifo)
    await ConsoleDevice(fifo, retries=retries, backoff=backoff).write(data)


async def send_line(fifo: Path, line: str, *, retries: int = 3, backoff: float = 0.2) -> None:
    """Write one line (newline appended) into a running session's headless channel."""
    await send_bytes(fifo, line.encode() + b"\n", retries=retries, backoff=backoff)
