"""Console device I/O: retrying writer and the transcript producer.

The writer opens the device per write (PTY slave or headless FIFO), so a
front-end never holds the console open between commands. Each write is
retried a bounded number of times with a short fixed backoff before
ConsoleWriteError is raised.

The reader is the single producer of the transcript: it puts the PTY in raw
mode (no echo back into the guest, no newline translation) and copies every
byte it receives into the transcript until the device closes.
"""

from __future__ import annotations

import asyncio
import logging
import os
import stat
import tty
from typing import TYPE_CHECKING

from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from console_bridge._logging import get_logger
from console_bridge.constants import (
    CARRIAGE_RETURN,
    INTERRUPT_BYTE,
    READ_CHUNK_SIZE,
    WRITE_RETRY_ATTEMPTS,
    WRITE_RETRY_BACKOFF_SECONDS,
)
from console_bridge.exceptions import ConsoleWriteError

if TYPE_CHECKING:
    from pathlib import Path

    from console_bridge.transcript import Transcript

logger = get_logger(__name__)


class ConsoleDevice:
    """Writer for the guest console (PTY or FIFO path)."""

    def __init__(
        self,
        path: Path,
        *,
        retries: int = WRITE_RETRY_ATTEMPTS,
        backoff: float = WRITE_RETRY_BACKOFF_SECONDS,
    ) -> None:
        self.path = path
        self.retries = retries
        self.backoff = backoff

    def _write_once(self, data: bytes) -> None:
        fd = os.open(self.path, os.O_WRONLY | os.O_NOCTTY | os.O_NONBLOCK)
        try:
            view = memoryview(data)
            while view:
                written = os.write(fd, view)
                view = view[written:]
        finally:
            os.close(fd)

    async def write(self, data: bytes) -> None:
        """Write raw bytes to the console.

        Raises:
            ConsoleWriteError: Device could not be opened or written after all retries
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.retries),
                wait=wait_fixed(self.backoff),
                retry=retry_if_exception_type(OSError),
                before_sleep=before_sleep_log(logger, logging.WARNING),
            ):
                with attempt:
                    await asyncio.to_thread(self._write_once, data)
        except RetryError as e:
            cause = e.last_attempt.exception()
            raise ConsoleWriteError(
                f"Console write failed after {self.retries} attempts: {cause}",
                {"device": str(self.path), "attempts": self.retries, "bytes": len(data)},
            ) from cause

    async def write_line(self, line: str) -> None:
        """Write *line* followed by a newline."""
        await self.write(line.encode() + b"\n")

    async def send_interrupt(self) -> None:
        """Send ETX (Ctrl-C) to the guest's foreground job."""
        await self.write(INTERRUPT_BYTE)

    async def send_cr(self) -> None:
        await self.write(CARRIAGE_RETURN)


class ConsoleReader:
    """Single producer copying console device output into the transcript."""

    def __init__(self, device: Path, transcript: Transcript) -> None:
        self.device = device
        self.transcript = transcript
        self.bytes_read = 0

    def _open(self) -> int:
        fd = os.open(self.device, os.O_RDWR | os.O_NOCTTY | os.O_NONBLOCK)
        if os.isatty(fd):
            tty.setraw(fd)
        return fd

    async def run(self) -> None:
        """Copy the device into the transcript until EOF, device error or cancellation."""
        fd = self._open()
        pipe = os.fdopen(fd, "rb", buffering=0)
        mode = os.fstat(fd).st_mode
        logger.debug(
            "Console reader started",
            extra={"device": str(self.device), "chardev": stat.S_ISCHR(mode), "fifo": stat.S_ISFIFO(mode)},
        )

        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        transport, _ = await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), pipe)
        try:
            while True:
                try:
                    chunk = await reader.read(READ_CHUNK_SIZE)
                except OSError as e:
                    # EIO once QEMU closes the PTY master
                    logger.info("Console device closed", extra={"device": str(self.device), "error": str(e)})
                    break
                if not chunk:
                    logger.info("Console device reached EOF", extra={"device": str(self.device)})
                    break
                self.bytes_read += len(chunk)
                await self.transcript.append(chunk)
        finally:
            transport.close()
            await self.transcript.close()
