"""Interactive line loop over a console session.

Each typed line is classified and either handled locally or run through the
command bridge with its output streamed back. While a command runs, Ctrl-C
is forwarded to the guest and ends the wait; at the prompt it behaves as
usual again.
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from typing import TYPE_CHECKING, Protocol

import click

from console_bridge._logging import get_logger
from console_bridge.exceptions import BridgeError, CommandValidationError, ConsoleWriteError
from console_bridge.models import CommandResult, LineKind

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = get_logger(__name__)

EXIT_WORDS = frozenset({"exit", "quit"})
CLEAR_SCREEN = "\033[2J\033[H"
BANNER = "Connected to guest console. Type 'exit' or 'quit' to leave, '^C' to interrupt the guest.\n"


class CommandTarget(Protocol):
    """What the loop needs from a session."""

    async def run(
        self,
        command: str,
        *,
        on_line: Callable[[str], None] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> CommandResult: ...

    async def interrupt(self) -> None: ...


def classify_line(line: str | None) -> LineKind:
    """Classify one input line (None means end of input)."""
    if line is None:
        return LineKind.EXIT
    text = line.strip()
    if not text:
        return LineKind.EMPTY
    if text in EXIT_WORDS:
        return LineKind.EXIT
    if text == "clear":
        return LineKind.CLEAR
    if text == "^C":
        return LineKind.INTERRUPT
    return LineKind.COMMAND


class StdinLineReader:
    """Async line reader over the process's stdin."""

    def __init__(self) -> None:
        self._reader: asyncio.StreamReader | None = None
        self._transport: asyncio.BaseTransport | None = None

    async def _connect(self) -> asyncio.StreamReader:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        self._transport, _ = await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
        self._reader = reader
        return reader

    async def __call__(self, prompt: str) -> str | None:
        reader = self._reader or await self._connect()
        click.echo(prompt, nl=False)
        raw = await reader.readline()
        if not raw:
            return None
        return raw.decode(errors="replace").rstrip("\r\n")

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None
            # connect_read_pipe switched stdin to non-blocking; give the terminal back as found
            os.set_blocking(sys.stdin.fileno(), True)


def _echo_out(text: str) -> None:
    click.echo(text, nl=False)


def _echo_err(text: str) -> None:
    click.echo(text, nl=False, err=True)


class InteractiveLoop:
    """Read-classify-run loop with streamed output and `[exit N]` trailers."""

    def __init__(
        self,
        target: CommandTarget,
        *,
        read_line: Callable[[str], Awaitable[str | None]],
        write: Callable[[str], None] = _echo_out,
        write_err: Callable[[str], None] = _echo_err,
        prompt: str = "guest$ ",
        banner: str = BANNER,
    ) -> None:
        self.target = target
        self.read_line = read_line
        self.write = write
        self.write_err = write_err
        self.prompt = prompt
        self.banner = banner
        self._background: set[asyncio.Task[None]] = set()

    async def run(self) -> int:
        """Run until exit/quit/EOF.

        Returns:
            Exit status for the front-end (0 on a normal quit)
        """
        if self.banner:
            self.write(self.banner)
        while True:
            line = await self.read_line(self.prompt)
            kind = classify_line(line)
            if kind is LineKind.EMPTY:
                continue
            if kind is LineKind.EXIT:
                if line is None:
                    self.write("\n")
                return 0
            if kind is LineKind.CLEAR:
                self.write(CLEAR_SCREEN)
            elif kind is LineKind.INTERRUPT:
                await self._interrupt()
            else:
                assert line is not None
                await self.run_command(line)

    async def _interrupt(self) -> None:
        try:
            await self.target.interrupt()
        except BridgeError as e:
            self.write_err(f"error: {e.message}\n")

    def _forward_sigint(self, cancel: asyncio.Event) -> None:
        cancel.set()
        task = asyncio.get_running_loop().create_task(self._interrupt())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def run_command(self, command: str) -> CommandResult | None:
        """Run one command, streaming lines as they arrive, then print the trailer."""
        loop = asyncio.get_running_loop()
        cancel = asyncio.Event()
        try:
            loop.add_signal_handler(signal.SIGINT, self._forward_sigint, cancel)
            handler_installed = True
        except (NotImplementedError, RuntimeError, ValueError):
            # Not the main thread (or no signal support); ^C still works as a typed line
            handler_installed = False

        try:
            result = await self.target.run(command, on_line=lambda out: self.write(out + "\n"), cancel=cancel)
        except (CommandValidationError, ConsoleWriteError) as e:
            self.write_err(f"error: {e.message}\n")
            return None
        finally:
            if handler_installed:
                loop.remove_signal_handler(signal.SIGINT)

        if result.interrupted:
            self.write("^C\n")
        self.write(f"[exit {result.exit_code}]\n")
        return result
