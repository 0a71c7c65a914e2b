"""Command/response bridge over the serial console.

One call to ``CommandBridge.run`` injects one marker-framed command line
and returns the output the guest printed between its START and END
markers, with the exit status carried on the END line.

Ordering matters: the transcript offset is taken before the command is
written, so the START line can never land before the point the reader
starts from.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import TYPE_CHECKING

from console_bridge._logging import get_logger
from console_bridge.constants import UNKNOWN_EXIT_CODE
from console_bridge.models import CommandResult
from console_bridge.protocol import OutputDemuxer, compose_command, new_invocation

if TYPE_CHECKING:
    from collections.abc import Callable

    from console_bridge.console import ConsoleDevice
    from console_bridge.transcript import Transcript

logger = get_logger(__name__)


class CommandBridge:
    """Runs marker-delimited commands through a console device.

    The bridge itself is not serialized; the owning Session guarantees at
    most one in-flight invocation.
    """

    def __init__(self, console: ConsoleDevice, transcript: Transcript) -> None:
        self.console = console
        self.transcript = transcript

    async def run(
        self,
        command: str,
        *,
        on_line: Callable[[str], None] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> CommandResult:
        """Run *command* in the guest shell and collect its output.

        Blocks until the END marker is seen or *cancel* is set. There is no
        built-in timeout; wrap the call (and forward an interrupt) if needed.

        Args:
            command: Single-line shell command
            on_line: Called with each output line as soon as it is captured
            cancel: Cancellation token; when set the wait ends and the result
                is marked interrupted

        Returns:
            CommandResult with the captured lines and exit status

        Raises:
            CommandValidationError: Command is not a single line
            ConsoleWriteError: Console device unavailable after retries
        """
        invocation = new_invocation(command)
        demux = OutputDemuxer(invocation)
        stop = cancel if cancel is not None else asyncio.Event()

        offset = self.transcript.size()
        started = time.monotonic()
        logger.debug(
            "Submitting command",
            extra={"invocation_id": invocation.id, "command": command, "offset": offset},
        )
        await self.console.write_line(compose_command(invocation))

        async with contextlib.aclosing(self.transcript.follow(offset, stop)) as lines:
            async for line in lines:
                for out in demux.feed(line):
                    if on_line is not None:
                        on_line(out)
                if demux.done:
                    break

        duration_ms = int((time.monotonic() - started) * 1000)

        if not demux.done:
            logger.info(
                "Command interrupted before END marker",
                extra={"invocation_id": invocation.id, "lines": len(demux.output)},
            )
            return CommandResult(
                command=command,
                output=demux.output,
                exit_code=UNKNOWN_EXIT_CODE,
                interrupted=True,
                duration_ms=duration_ms,
            )

        if demux.malformed_end is not None:
            logger.warning(
                "END marker without exit status",
                extra={
                    "invocation_id": invocation.id,
                    "line": demux.malformed_end,
                    "error_type": "MalformedEndMarkerError",
                },
            )

        exit_code = demux.exit_code if demux.exit_code is not None else UNKNOWN_EXIT_CODE
        logger.debug(
            "Command finished",
            extra={"invocation_id": invocation.id, "exit_code": exit_code, "duration_ms": duration_ms},
        )
        return CommandResult(
            command=command,
            output=demux.output,
            exit_code=exit_code,
            duration_ms=duration_ms,
        )

    async def interrupt(self) -> None:
        """Send Ctrl-C to the guest foreground job, bypassing the marker protocol."""
        await self.console.send_interrupt()
