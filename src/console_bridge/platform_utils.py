"""Process handling on top of psutil.

QEMU is identified by pid in two places: the owning session holds the
asyncio child, and other front-ends only have the pid from the state file.
psutil covers both, and guards signals against a recycled pid.
"""

from __future__ import annotations

import asyncio
import contextlib

import psutil

from console_bridge.exceptions import SessionTeardownError


class ProcessWrapper:
    """An asyncio child paired with its psutil handle.

    Signals go through psutil, which refuses to act on a pid that now names
    a different process; the asyncio side supplies the exit status.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process) -> None:
        self.async_proc = async_proc
        self.psutil_proc: psutil.Process | None = None
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            self.psutil_proc = psutil.Process(async_proc.pid)

    @property
    def pid(self) -> int:
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        return self.async_proc.returncode

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self.async_proc.stdout

    async def is_running(self) -> bool:
        if self.psutil_proc is None:
            return self.async_proc.returncode is None
        try:
            # /proc reads can stall on a wedged process; keep them off the loop
            return await asyncio.to_thread(self.psutil_proc.is_running)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    async def _signal(self, via_psutil: str, via_asyncio: str) -> None:
        if self.psutil_proc is not None and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(getattr(self.psutil_proc, via_psutil))
            return
        getattr(self.async_proc, via_asyncio)()

    async def terminate(self) -> None:
        await self._signal("terminate", "terminate")

    async def kill(self) -> None:
        await self._signal("kill", "kill")

    async def wait(self) -> int:
        return await self.async_proc.wait()

    async def wait_with_timeout(self, timeout: float) -> int:
        """wait() bounded by ``timeout`` (raises TimeoutError).

        The session drains stdout for the process's whole life, so waiting
        cannot deadlock on a full pipe.
        """
        return await asyncio.wait_for(self.wait(), timeout=timeout)


def pid_is_running(pid: int) -> bool:
    """True if ``pid`` is alive and not a zombie."""
    try:
        proc = psutil.Process(pid)
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


async def terminate_pid(pid: int, grace: float, kill_timeout: float) -> int | None:
    """SIGTERM a process we did not spawn, SIGKILL it after ``grace`` seconds.

    Returns:
        Exit status, when psutil can report it (only for our own children)

    Raises:
        SessionTeardownError: No such process
    """
    try:
        proc = psutil.Process(pid)
    except psutil.NoSuchProcess as e:
        raise SessionTeardownError(f"process {pid} not running", {"pid": pid}) from e

    try:
        await asyncio.to_thread(proc.terminate)
        try:
            return await asyncio.to_thread(proc.wait, grace)
        except psutil.TimeoutExpired:
            await asyncio.to_thread(proc.kill)
            return await asyncio.to_thread(proc.wait, kill_timeout)
    except psutil.NoSuchProcess:
        return None
