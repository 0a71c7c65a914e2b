"""Append-only console transcript with async tail readers.

One producer (the console reader task) appends bytes and notifies an
``asyncio.Condition``; any number of readers tail the file from an offset.
Readers also re-check the file every ``poll_interval`` seconds, so a
transcript written by another process (an attached front-end reading a
session it does not own) is followed just as well.

Usage:
    transcript = Transcript(path)
    offset = transcript.size()
    async for line in transcript.follow(offset):
        ...
"""

from __future__ import annotations

import asyncio
import codecs
from typing import TYPE_CHECKING

import aiofiles
import aiofiles.os

from console_bridge._logging import get_logger
from console_bridge.constants import READ_CHUNK_SIZE, TRANSCRIPT_POLL_INTERVAL_SECONDS

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from aiofiles.threadpool.binary import AsyncBufferedIOBase

logger = get_logger(__name__)


class Transcript:
    """The guest console log: grows monotonically, never rewritten."""

    def __init__(self, path: Path, poll_interval: float = TRANSCRIPT_POLL_INTERVAL_SECONDS) -> None:
        self.path = path
        self.poll_interval = poll_interval
        self._cond = asyncio.Condition()
        self._writer: AsyncBufferedIOBase | None = None

    # -------------------------------------------------------------------------
    # Producer side
    # -------------------------------------------------------------------------

    async def reset(self) -> None:
        """Create the file empty (start of a new session)."""
        await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
        async with aiofiles.open(self.path, "wb"):
            pass

    async def append(self, data: bytes) -> None:
        """Append raw console bytes and wake every waiting reader."""
        if not data:
            return
        if self._writer is None:
            self._writer = await aiofiles.open(self.path, "ab")
        await self._writer.write(data)
        await self._writer.flush()
        await self.notify()

    async def notify(self) -> None:
        async with self._cond:
            self._cond.notify_all()

    async def close(self) -> None:
        """Close the producer handle. Safe to call multiple times."""
        if self._writer is not None:
            await self._writer.close()
            self._writer = None

    # -------------------------------------------------------------------------
    # Reader side
    # -------------------------------------------------------------------------

    def size(self) -> int:
        """Current transcript length in bytes (0 if not created yet)."""
        try:
            return self.path.stat().st_size
        except FileNotFoundError:
            return 0

    def exists(self) -> bool:
        return self.path.exists()

    async def snapshot(self) -> tuple[str, int]:
        """Return the transcript text and the byte offset it ends at.

        Tail from the returned offset to see exactly what came after the
        snapshot, with no gap and no overlap.
        """
        try:
            async with aiofiles.open(self.path, "rb") as f:
                data = await f.read()
        except FileNotFoundError:
            return "", 0
        return data.decode(errors="replace"), len(data)

    async def read_all(self) -> str:
        """Snapshot of the whole transcript as text."""
        text, _ = await self.snapshot()
        return text

    async def _wait_for_append(self) -> None:
        """Block until the producer notifies or the poll interval elapses."""
        try:
            async with self._cond:
                await asyncio.wait_for(self._cond.wait(), timeout=self.poll_interval)
        except TimeoutError:
            pass

    async def follow_text(
        self,
        offset: int | None = None,
        stop: asyncio.Event | None = None,
    ) -> AsyncIterator[str]:
        """Yield text appended after *offset* as it arrives, in raw chunks.

        Partial lines are yielded too (a shell prompt has no trailing newline).

        Args:
            offset: Byte offset to start from (default: current end)
            stop: Optional event; iteration ends once it is set
        """
        pos = self.size() if offset is None else offset
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        while not self.exists():
            if stop is not None and stop.is_set():
                return
            await self._wait_for_append()

        async with aiofiles.open(self.path, "rb") as f:
            await f.seek(pos)
            while True:
                if stop is not None and stop.is_set():
                    return
                chunk = await f.read(READ_CHUNK_SIZE)
                if chunk:
                    text = decoder.decode(chunk)
                    if text:
                        yield text
                    continue
                await self._wait_for_append()

    async def follow(
        self,
        offset: int | None = None,
        stop: asyncio.Event | None = None,
    ) -> AsyncIterator[str]:
        """Yield complete lines appended after *offset*, trailing CR/LF stripped.

        A trailing partial line is held back until its newline arrives.
        """
        pending = ""
        async for text in self.follow_text(offset, stop):
            pending += text
            *lines, pending = pending.split("\n")
            for line in lines:
                yield line.rstrip("\r")
