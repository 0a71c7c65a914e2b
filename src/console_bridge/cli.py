"""Command-line interface for console-bridge.

Usage:
    cbridge start                  # Boot the guest, then drop into the console loop
    cbridge start --headless       # Boot and serve the FIFO channel until stopped
    cbridge shell                  # Interactive loop on a running session
    cbridge run 'uname -a'         # One command; exits with the guest's status
    cbridge send 'dmesg | tail'    # Raw line through the FIFO (no capture)
    cbridge status / stop
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, NoReturn

import click

from console_bridge import __version__
from console_bridge._logging import configure_logging, get_logger
from console_bridge.constants import (
    EXIT_BRIDGE_ERROR,
    EXIT_PRECONDITION,
    EXIT_TIMEOUT,
    INTERRUPT_BYTE,
    UNKNOWN_EXIT_CODE,
)
from console_bridge.exceptions import (
    BridgeError,
    CommandValidationError,
    DiscoveryTimeoutError,
    PreconditionError,
    VmDependencyError,
)
from console_bridge.headless import send_bytes, send_line
from console_bridge.platform_utils import pid_is_running
from console_bridge.repl import InteractiveLoop, StdinLineReader
from console_bridge.session import Session, load_state, stop_session
from console_bridge.settings import Settings

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_CLI_ERROR = 2
EXIT_INTERRUPTED = 130

logger = get_logger(__name__)


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern."""
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def _no_session_error(e: PreconditionError) -> str:
    return format_error(
        "No usable session",
        e.message,
        ["Start one with: cbridge start --headless", "Check CONSOLE_BRIDGE_LOG_DIR points at its log directory"],
    )


# =============================================================================
# Async command bodies
# =============================================================================


async def start_session(settings: Settings, headless: bool) -> int:
    """Boot the guest and serve it until quit (interactive) or stop (headless)."""
    try:
        session = await Session.start(settings)
    except DiscoveryTimeoutError as e:
        click.echo(
            format_error(
                "Console discovery failed",
                e.message,
                [f"Inspect the QEMU log: {settings.boot_log_path}", "Raise CONSOLE_BRIDGE_DISCOVERY_ATTEMPTS"],
            ),
            err=True,
        )
        return EXIT_PRECONDITION
    except VmDependencyError as e:
        click.echo(format_error("Missing dependency", e.message, ["Check the CONSOLE_BRIDGE_* paths"]), err=True)
        return EXIT_PRECONDITION

    async with session:
        click.echo(f"Guest console: {session.state.console_device if session.state else '?'}", err=True)
        if not headless:
            reader = StdinLineReader()
            try:
                return await InteractiveLoop(session, read_line=reader).run()
            finally:
                reader.close()

        loop = asyncio.get_running_loop()
        stop = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        click.echo(f"Headless channel: {settings.fifo_path}", err=True)
        waiters = [asyncio.create_task(stop.wait()), asyncio.create_task(session.wait_closed())]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in waiters:
                task.cancel()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
        return EXIT_SUCCESS


async def attach_shell(settings: Settings) -> int:
    try:
        session = await Session.attach(settings)
    except PreconditionError as e:
        click.echo(_no_session_error(e), err=True)
        return EXIT_PRECONDITION

    reader = StdinLineReader()
    try:
        async with session:
            return await InteractiveLoop(session, read_line=reader).run()
    finally:
        reader.close()


async def run_command(settings: Settings, command: str, timeout: float | None) -> int:
    """Run one command on a running session and map the outcome to an exit code."""
    try:
        session = await Session.attach(settings)
    except PreconditionError as e:
        click.echo(_no_session_error(e), err=True)
        return EXIT_BRIDGE_ERROR

    loop = asyncio.get_running_loop()
    cancel = asyncio.Event()
    loop.add_signal_handler(signal.SIGINT, cancel.set)

    async with session:
        try:
            result = await asyncio.wait_for(
                session.run(command, on_line=click.echo, cancel=cancel),
                timeout=timeout,
            )
        except TimeoutError:
            click.echo(
                format_error(
                    "Command timed out",
                    f"No END marker within {timeout} seconds; sent Ctrl-C to the guest.",
                    ["Increase --timeout", "Check the transcript for a stuck prompt"],
                ),
                err=True,
            )
            await _interrupt_quietly(session)
            return EXIT_TIMEOUT
        except CommandValidationError as e:
            click.echo(format_error("Invalid command", e.message), err=True)
            return EXIT_CLI_ERROR
        except BridgeError as e:
            click.echo(format_error("Bridge error", e.message, [f"Is {settings.fifo_path} served?"]), err=True)
            return EXIT_BRIDGE_ERROR
        finally:
            loop.remove_signal_handler(signal.SIGINT)

        if result.interrupted:
            await _interrupt_quietly(session)
            return EXIT_INTERRUPTED
        if result.exit_code == UNKNOWN_EXIT_CODE:
            click.echo(format_error("Unknown exit status", "The END marker carried no exit code."), err=True)
            return EXIT_BRIDGE_ERROR
        return result.exit_code


async def _interrupt_quietly(session: Session) -> None:
    try:
        await session.interrupt()
    except BridgeError as e:
        logger.warning("Interrupt not delivered", extra={"error": e.message})


async def send_to_session(settings: Settings, line: str | None, interrupt: bool) -> int:
    try:
        state = await load_state(settings.state_path)
        if state.fifo is None:
            raise PreconditionError("Session has no headless channel")
        if interrupt:
            await send_bytes(state.fifo, INTERRUPT_BYTE, retries=settings.write_retries, backoff=settings.write_backoff)
        if line is not None:
            await send_line(state.fifo, line, retries=settings.write_retries, backoff=settings.write_backoff)
    except PreconditionError as e:
        click.echo(_no_session_error(e), err=True)
        return EXIT_PRECONDITION
    except BridgeError as e:
        click.echo(format_error("Send failed", e.message), err=True)
        return EXIT_BRIDGE_ERROR
    return EXIT_SUCCESS


async def show_status(settings: Settings) -> int:
    try:
        state = await load_state(settings.state_path)
    except PreconditionError:
        click.echo("stopped")
        return EXIT_PRECONDITION

    running = pid_is_running(state.pid)
    click.echo(f"state:      {'running' if running else 'dead'}")
    click.echo(f"pid:        {state.pid}")
    click.echo(f"boot:       {state.boot_state.value}")
    click.echo(f"console:    {state.console_device}")
    click.echo(f"transcript: {state.transcript}")
    click.echo(f"boot log:   {state.boot_log}")
    click.echo(f"fifo:       {state.fifo or '-'}")
    return EXIT_SUCCESS if running else EXIT_PRECONDITION


async def stop_running(settings: Settings) -> int:
    stopped = await stop_session(settings)
    click.echo("stopped" if stopped else "no running session")
    return EXIT_SUCCESS if stopped else EXIT_PRECONDITION


# =============================================================================
# Click commands
# =============================================================================


def _run(coro: Coroutine[Any, Any, int]) -> NoReturn:
    try:
        exit_code = asyncio.run(coro)
    except KeyboardInterrupt:
        exit_code = EXIT_INTERRUPTED
    sys.exit(exit_code)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--log-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Session directory (transcript, boot log, FIFO, state file)",
)
@click.option("-v", "--verbose", is_flag=True, help="Debug diagnostics on stderr")
@click.option("-q", "--quiet", is_flag=True, help="Only errors on stderr")
@click.version_option(__version__, "-V", "--version", prog_name="console-bridge")
@click.pass_context
def main(ctx: click.Context, log_dir: Path | None, verbose: bool, quiet: bool) -> None:
    """Drive a QEMU guest through its serial console.

    Commands are framed with unique START/END markers so their output and
    exit status can be recovered from the console stream.
    """
    configure_logging(level=logging.DEBUG if verbose else None, quiet=quiet)
    ctx.obj = Settings(log_dir=log_dir) if log_dir else Settings()


@main.command()
@click.option("--headless/--interactive", default=None, help="Serve the FIFO channel instead of a prompt")
@click.pass_obj
def start(settings: Settings, headless: bool | None) -> NoReturn:
    """Boot the guest and wait until its shell answers."""
    use_headless = settings.headless if headless is None else headless
    _run(start_session(settings, use_headless))


@main.command()
@click.pass_obj
def shell(settings: Settings) -> NoReturn:
    """Interactive loop on a running session."""
    _run(attach_shell(settings))


@main.command(name="run")
@click.argument("command")
@click.option("-t", "--timeout", type=float, default=None, help="Seconds to wait for the command")
@click.pass_obj
def run_cmd(settings: Settings, command: str, timeout: float | None) -> NoReturn:
    """Run COMMAND in the guest; exit with its status.

    \b
    124  timed out (Ctrl-C forwarded to the guest)
    125  bridge error (no session, console unavailable, unknown status)
    """
    _run(run_command(settings, command, timeout))


@main.command()
@click.argument("line", required=False)
@click.option("--interrupt", is_flag=True, help="Send Ctrl-C before LINE")
@click.pass_obj
def send(settings: Settings, line: str | None, interrupt: bool) -> NoReturn:
    """Write LINE to the guest console verbatim (no output capture)."""
    if line is None and not interrupt:
        raise click.UsageError("Provide LINE or --interrupt")
    _run(send_to_session(settings, line, interrupt))


@main.command()
@click.pass_obj
def status(settings: Settings) -> NoReturn:
    """Show the running session, if any."""
    _run(show_status(settings))


@main.command()
@click.pass_obj
def stop(settings: Settings) -> NoReturn:
    """Stop the running session's QEMU process."""
    _run(stop_running(settings))


if __name__ == "__main__":
    main()
