"""Session - one QEMU guest and its serial console bridge.

A Session owns everything tied to one VM: the QEMU process, the console
reader task feeding the transcript, the headless FIFO channel, and the
persisted session state file. Commands go through ``run()``, which allows
at most one in-flight invocation.

Example:
    ```python
    async with await Session.start(Settings()) as session:
        result = await session.run("uname -a")
        print(result.stdout, result.exit_code)
    ```

Front-ends in another process use ``Session.attach()``: the console writer
then targets the FIFO, output is read from the transcript file, and closing
the handle leaves the VM running.

Lifecycle:
    - start(): launch QEMU, discover the console, gate on readiness
    - run()/interrupt(): talk to the guest shell
    - close(): cancel tasks, SIGTERM -> grace -> SIGKILL QEMU (idempotent)
"""

from __future__ import annotations

import asyncio
import secrets
from collections import deque
from collections.abc import AsyncIterator, Callable  # noqa: TC003 - Used at runtime for _guard()
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Self

import aiofiles
import aiofiles.os

from console_bridge._logging import get_logger
from console_bridge.bridge import CommandBridge
from console_bridge.console import ConsoleDevice, ConsoleReader
from console_bridge.constants import (
    BOOT_LOG_RING_SIZE,
    KILL_TIMEOUT_SECONDS,
    MONITOR_SOCKET_TIMEOUT_SECONDS,
)
from console_bridge.discovery import find_console_device
from console_bridge.exceptions import DiscoveryTimeoutError, PreconditionError, SessionClosedError
from console_bridge.headless import HeadlessChannel, ensure_fifo
from console_bridge.models import BootState, CommandResult, SessionState
from console_bridge.platform_utils import ProcessWrapper, pid_is_running
from console_bridge.qemu_cmd import build_qemu_cmd, check_dependencies
from console_bridge.readiness import ReadinessDetector
from console_bridge.resource_cleanup import cleanup_file, cleanup_pid, cleanup_process, cleanup_task
from console_bridge.subprocess_utils import drain_subprocess_output, log_task_exception, wait_for_socket
from console_bridge.transcript import Transcript

if TYPE_CHECKING:
    from pathlib import Path

    from aiofiles.threadpool.text import AsyncTextIOWrapper

    from console_bridge.settings import Settings

logger = get_logger(__name__)


# =============================================================================
# Session state file
# =============================================================================


async def save_state(path: Path, state: SessionState) -> None:
    async with aiofiles.open(path, "w") as f:
        await f.write(state.model_dump_json(indent=2))


async def load_state(path: Path) -> SessionState:
    """Read a session state file.

    Raises:
        PreconditionError: No state file (no session was started here)
    """
    try:
        async with aiofiles.open(path) as f:
            raw = await f.read()
    except FileNotFoundError as e:
        raise PreconditionError("No running session (state file missing)", {"state_file": str(path)}) from e
    return SessionState.model_validate_json(raw)


async def stop_session(settings: Settings) -> bool:
    """Stop a session started by another process.

    Returns:
        True if a running QEMU process was stopped, False if none was running
    """
    try:
        state = await load_state(settings.state_path)
    except PreconditionError:
        return False

    running = pid_is_running(state.pid)
    if running:
        await cleanup_pid(state.pid, "qemu", term_timeout=settings.teardown_grace)
    await cleanup_file(settings.state_path, context_id=str(state.pid), description="session state")
    return running


# =============================================================================
# Session
# =============================================================================


class Session:
    """Handle for one guest console.

    Thread-safety: run() calls are serialized via asyncio.Lock; the marker
    protocol supports one in-flight command per console. interrupt() is not
    serialized so it can reach a command that holds the lock.

    Attributes:
        closed: Whether the session has been closed.
        boot_state: Furthest boot stage observed.
        state: Persisted description (device, paths, pid).
    """

    def __init__(
        self,
        settings: Settings,
        *,
        console: ConsoleDevice,
        transcript: Transcript,
        state: SessionState | None = None,
        process: ProcessWrapper | None = None,
    ) -> None:
        self.settings = settings
        self.session_id = secrets.token_hex(4)
        self.console = console
        self.transcript = transcript
        self.bridge = CommandBridge(console, transcript)
        self.state = state
        self.boot_lines: deque[str] = deque(maxlen=BOOT_LOG_RING_SIZE)
        self._process = process
        self._closed = False
        self._run_lock = asyncio.Lock()
        self._reader_task: asyncio.Task[None] | None = None
        self._drain_task: asyncio.Task[None] | None = None
        self._channel_task: asyncio.Task[None] | None = None
        self._boot_log: AsyncTextIOWrapper | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def owns_vm(self) -> bool:
        return self._process is not None

    @property
    def boot_state(self) -> BootState:
        return self.state.boot_state if self.state else BootState.BOOTING

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    @classmethod
    async def start(cls, settings: Settings) -> Session:
        """Launch QEMU and bring its console up to a usable state.

        Raises:
            VmDependencyError: QEMU binary or an image is missing
            DiscoveryTimeoutError: Console device never announced (or QEMU exited)
        """
        check_dependencies(settings)
        await aiofiles.os.makedirs(settings.log_dir, exist_ok=True)
        await cleanup_file(settings.monitor_socket_path, context_id="startup", description="stale monitor socket")

        transcript = Transcript(settings.transcript_path, poll_interval=settings.poll_interval)
        await transcript.reset()
        async with aiofiles.open(settings.boot_log_path, "w"):
            pass

        cmd = build_qemu_cmd(settings)
        logger.info("Launching QEMU", extra={"boot_log": str(settings.boot_log_path)})
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
        process = ProcessWrapper(proc)

        # Placeholder writer until discovery knows the device
        session = cls(
            settings,
            console=ConsoleDevice(settings.fifo_path),
            transcript=transcript,
            process=process,
        )
        try:
            await session._launch()
        except BaseException:
            await session.close()
            raise
        return session

    async def _launch(self) -> None:
        settings = self.settings
        assert self._process is not None
        process = self._process

        self._boot_log = await aiofiles.open(settings.boot_log_path, "a")

        async def on_boot_line(line: str) -> None:
            self.boot_lines.append(line)
            if self._boot_log is not None:
                await self._boot_log.write(line + "\n")
                await self._boot_log.flush()

        self._drain_task = asyncio.create_task(
            drain_subprocess_output(
                process,
                process_name="QEMU",
                context_id=self.session_id,
                on_line=on_boot_line,
            ),
            name=f"qemu-drain-{self.session_id}",
        )
        self._drain_task.add_done_callback(log_task_exception)

        def abort_if_exited() -> None:
            if process.returncode is not None:
                raise DiscoveryTimeoutError(
                    "QEMU exited before the console came up",
                    {"returncode": process.returncode, "boot_log_tail": list(self.boot_lines)[-10:]},
                )

        device = await find_console_device(
            settings.boot_log_path,
            attempts=settings.discovery_attempts,
            interval=settings.discovery_interval,
            pattern=settings.pty_pattern,
            abort_check=abort_if_exited,
        )
        self.console = ConsoleDevice(device, retries=settings.write_retries, backoff=settings.write_backoff)
        self.bridge = CommandBridge(self.console, self.transcript)

        reader = ConsoleReader(device, self.transcript)
        self._reader_task = asyncio.create_task(reader.run(), name=f"console-reader-{self.session_id}")
        self._reader_task.add_done_callback(log_task_exception)

        monitor_socket: Path | None = settings.monitor_socket_path
        try:
            await wait_for_socket(
                settings.monitor_socket_path,
                timeout=MONITOR_SOCKET_TIMEOUT_SECONDS,
                abort_check=abort_if_exited,
            )
        except TimeoutError:
            logger.warning("QMP socket not available; prompt nudges use the console only")
            monitor_socket = None

        self.state = SessionState(
            pid=process.pid,
            console_device=device,
            transcript=settings.transcript_path,
            boot_log=settings.boot_log_path,
            monitor_socket=settings.monitor_socket_path,
            fifo=settings.fifo_path,
        )
        await save_state(settings.state_path, self.state)

        detector = ReadinessDetector(
            self.transcript,
            self.console,
            monitor_socket=monitor_socket,
            os_ready_pattern=settings.os_ready_pattern,
            prompt_pattern=settings.prompt_pattern,
            os_ready_timeout=settings.os_ready_timeout,
            prompt_timeout=settings.prompt_timeout,
            self_test_timeout=settings.self_test_timeout,
        )
        boot_state = await detector.run_boot_sequence()
        if settings.probe_commands:
            logger.info("Querying guest info (printing to console)")
            await detector.send_probes(settings.probe_commands)

        self._start_channel()

        self.state = self.state.model_copy(update={"boot_state": boot_state})
        await save_state(settings.state_path, self.state)
        logger.info(
            "Session ready",
            extra={"session_id": self.session_id, "device": str(device), "boot_state": boot_state.value},
        )

    def _start_channel(self) -> None:
        """Serve the headless FIFO; its lines wait for the run lock like any command."""
        ensure_fifo(self.settings.fifo_path)
        channel = HeadlessChannel(self.settings.fifo_path, self.console, write_lock=self._run_lock)
        self._channel_task = asyncio.create_task(channel.run(), name=f"headless-{self.session_id}")
        self._channel_task.add_done_callback(log_task_exception)

    @classmethod
    async def attach(cls, settings: Settings) -> Session:
        """Open a handle on a session started by another process.

        Raises:
            PreconditionError: No running session, or its transcript/FIFO is missing
        """
        state = await load_state(settings.state_path)
        if not pid_is_running(state.pid):
            raise PreconditionError("No running session (QEMU process is gone)", {"pid": state.pid})
        if not state.transcript.exists():
            raise PreconditionError("Console transcript missing", {"transcript": str(state.transcript)})
        if state.fifo is None or not state.fifo.exists():
            raise PreconditionError("Headless channel not available", {"fifo": str(state.fifo)})

        console = ConsoleDevice(state.fifo, retries=settings.write_retries, backoff=settings.write_backoff)
        transcript = Transcript(state.transcript, poll_interval=settings.poll_interval)
        logger.debug("Attached to session", extra={"pid": state.pid, "fifo": str(state.fifo)})
        return cls(settings, console=console, transcript=transcript, state=state)

    # -------------------------------------------------------------------------
    # Guest interaction
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def _guard(self) -> AsyncIterator[None]:
        """Acquire run lock with session lifecycle checks."""
        if self._closed:
            raise SessionClosedError("Session is closed")
        async with self._run_lock:
            if self._closed:
                raise SessionClosedError("Session closed while waiting for lock")
            yield

    async def run(
        self,
        command: str,
        *,
        on_line: Callable[[str], None] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> CommandResult:
        """Run one shell command in the guest and return its output and exit code.

        Raises:
            SessionClosedError: Session already closed
            CommandValidationError: Command is not a single line
            ConsoleWriteError: Console unavailable after retries
        """
        async with self._guard():
            return await self.bridge.run(command, on_line=on_line, cancel=cancel)

    async def interrupt(self) -> None:
        """Send Ctrl-C to the guest's foreground job."""
        if self._closed:
            raise SessionClosedError("Session is closed")
        await self.bridge.interrupt()

    async def send_line(self, line: str) -> None:
        """Write a raw line to the console, with no markers and no capture.

        Waits for any in-flight command, like lines from the headless FIFO.
        """
        async with self._guard():
            await self.console.write_line(line)

    async def wait_closed(self) -> int | None:
        """Block until the owned QEMU process exits (returns its exit code)."""
        if self._process is None:
            return None
        code = await self._process.wait()
        logger.info("QEMU exited", extra={"returncode": code, "session_id": self.session_id})
        return code

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Close the session; an owned VM is stopped.

        Idempotent: safe to call multiple times. Teardown steps never raise.
        """
        if self._closed:
            return
        self._closed = True

        if self._process is None:
            return

        logger.info("Stopping session", extra={"session_id": self.session_id, "pid": self._process.pid})
        await cleanup_task(self._channel_task, "headless channel")
        await cleanup_process(
            self._process,
            "qemu",
            self.session_id,
            term_timeout=self.settings.teardown_grace,
            kill_timeout=KILL_TIMEOUT_SECONDS,
        )
        await cleanup_task(self._reader_task, "console reader")
        await cleanup_task(self._drain_task, "qemu output drain")
        if self._boot_log is not None:
            await self._boot_log.close()
            self._boot_log = None
        await self.transcript.close()

        await cleanup_file(self.settings.fifo_path, self.session_id, "fifo")
        await cleanup_file(self.settings.state_path, self.session_id, "session state")
        await cleanup_file(self.settings.monitor_socket_path, self.session_id, "monitor socket")
