"""Shared pytest fixtures for console-bridge tests.

Nothing here boots a VM. ``FakeShellConsole`` stands in for the guest: each
line written to it is echoed into the transcript (as a tty would) and then
executed by ``/bin/sh``, with the output appended CRLF-terminated the way a
serial console delivers it.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
from pathlib import Path

import pytest

from console_bridge.settings import Settings
from console_bridge.transcript import Transcript

POLL = 0.02


class FakeShellConsole:
    """ConsoleDevice stand-in backed by a real /bin/sh per line."""

    def __init__(self, transcript: Transcript, *, echo: bool = True) -> None:
        self.transcript = transcript
        self.echo = echo
        self.writes: list[bytes] = []
        self.interrupts = 0
        self.crs = 0
        self._procs: list[asyncio.subprocess.Process] = []
        self._tasks: set[asyncio.Task[None]] = set()

    async def _execute(self, line: str) -> None:
        proc = await asyncio.create_subprocess_exec(
            "/bin/sh",
            "-c",
            line,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
        self._procs.append(proc)
        assert proc.stdout is not None
        async for chunk in proc.stdout:
            await self.transcript.append(chunk.replace(b"\n", b"\r\n"))
        await proc.wait()

    async def write(self, data: bytes) -> None:
        self.writes.append(data)
        if data == b"\x03":
            self.interrupts += 1
            for proc in self._procs:
                with contextlib.suppress(ProcessLookupError):
                    os.killpg(proc.pid, signal.SIGKILL)
            return
        if data == b"\r":
            self.crs += 1
            return
        line = data.decode().rstrip("\n")
        if self.echo:
            await self.transcript.append(line.encode() + b"\r\n")
        task = asyncio.create_task(self._execute(line))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def write_line(self, line: str) -> None:
        await self.write(line.encode() + b"\n")

    async def send_interrupt(self) -> None:
        await self.write(b"\x03")

    async def send_cr(self) -> None:
        await self.write(b"\r")

    async def aclose(self) -> None:
        for proc in self._procs:
            with contextlib.suppress(ProcessLookupError):
                os.killpg(proc.pid, signal.SIGKILL)
        for task in list(self._tasks):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, ProcessLookupError):
                await task


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in a temp log dir with test-speed timings."""
    return Settings(
        log_dir=tmp_path / "logs",
        discovery_attempts=3,
        discovery_interval=0.01,
        os_ready_timeout=0.3,
        prompt_timeout=0.3,
        self_test_timeout=2.0,
        write_backoff=0.0,
        poll_interval=POLL,
        teardown_grace=0.5,
    )


@pytest.fixture
async def transcript(tmp_path: Path) -> Transcript:
    t = Transcript(tmp_path / "console.log", poll_interval=POLL)
    await t.reset()
    yield t
    await t.close()


@pytest.fixture
async def fake_shell(transcript: Transcript) -> FakeShellConsole:
    console = FakeShellConsole(transcript)
    yield console
    await console.aclose()
