"""Tests for the interactive loop and line classification."""

import asyncio
import os
import signal
from unittest.mock import AsyncMock

import pytest

from console_bridge.exceptions import CommandValidationError, ConsoleWriteError
from console_bridge.models import CommandResult, LineKind
from console_bridge.repl import CLEAR_SCREEN, InteractiveLoop, classify_line


class TestClassifyLine:
    @pytest.mark.parametrize(
        ("line", "kind"),
        [
            ("", LineKind.EMPTY),
            ("   \t", LineKind.EMPTY),
            ("exit", LineKind.EXIT),
            (" quit ", LineKind.EXIT),
            (None, LineKind.EXIT),
            ("clear", LineKind.CLEAR),
            ("^C", LineKind.INTERRUPT),
            ("ls -la", LineKind.COMMAND),
            ("exit 3", LineKind.COMMAND),
        ],
    )
    def test_kinds(self, line, kind):
        assert classify_line(line) is kind


def _scripted(*lines):
    queue = list(lines)

    async def read_line(prompt: str):
        return queue.pop(0) if queue else None

    return read_line


class _Capture:
    def __init__(self) -> None:
        self.out: list[str] = []
        self.err: list[str] = []

    @property
    def text(self) -> str:
        return "".join(self.out)


def _loop(target, *lines):
    cap = _Capture()
    loop = InteractiveLoop(
        target,
        read_line=_scripted(*lines),
        write=cap.out.append,
        write_err=cap.err.append,
        banner="",
    )
    return loop, cap


class TestInteractiveLoop:
    async def test_empty_lines_cause_no_interaction(self):
        target = AsyncMock()
        loop, _ = _loop(target, "", "  ", "exit")
        assert await loop.run() == 0
        target.run.assert_not_awaited()
        target.interrupt.assert_not_awaited()

    async def test_eof_ends_loop(self):
        target = AsyncMock()
        loop, cap = _loop(target)
        assert await loop.run() == 0
        assert cap.text == "\n"

    async def test_quit(self):
        loop, _ = _loop(AsyncMock(), "quit")
        assert await loop.run() == 0

    async def test_clear_writes_escape(self):
        target = AsyncMock()
        loop, cap = _loop(target, "clear", "exit")
        await loop.run()
        assert CLEAR_SCREEN in cap.text
        target.run.assert_not_awaited()

    async def test_caret_c_interrupts_guest(self):
        target = AsyncMock()
        loop, _ = _loop(target, "^C", "exit")
        await loop.run()
        target.interrupt.assert_awaited_once()
        target.run.assert_not_awaited()

    async def test_command_streams_lines_then_trailer(self):
        target = AsyncMock()

        async def run(command, *, on_line=None, cancel=None):
            for line in ("Linux", "vm"):
                on_line(line)
            return CommandResult(command=command, output=["Linux", "vm"], exit_code=0)

        target.run.side_effect = run
        loop, cap = _loop(target, "uname -a", "exit")
        await loop.run()
        assert cap.text == "Linux\nvm\n[exit 0]\n"
        assert target.run.await_args.args[0] == "uname -a"

    async def test_nonzero_exit_trailer(self):
        target = AsyncMock()
        target.run.return_value = CommandResult(command="false", exit_code=1)
        loop, cap = _loop(target, "false", "exit")
        await loop.run()
        assert "[exit 1]\n" in cap.text

    async def test_interrupted_result_marked(self):
        target = AsyncMock()
        target.run.return_value = CommandResult(command="sleep 9", exit_code=-1, interrupted=True)
        loop, cap = _loop(target, "sleep 9", "exit")
        await loop.run()
        assert cap.text.endswith("^C\n[exit -1]\n")

    async def test_validation_error_reported_and_loop_continues(self):
        target = AsyncMock()
        target.run.side_effect = [
            CommandValidationError("command must be a single line"),
            CommandResult(command="true", exit_code=0),
        ]
        loop, cap = _loop(target, "bad", "true", "exit")
        assert await loop.run() == 0
        assert cap.err == ["error: command must be a single line\n"]
        assert "[exit 0]\n" in cap.text

    async def test_console_error_reported(self):
        target = AsyncMock()
        target.run.side_effect = ConsoleWriteError("console write failed")
        loop, cap = _loop(target, "ls", "exit")
        assert await loop.run() == 0
        assert cap.err == ["error: console write failed\n"]

    async def test_cancel_event_passed_to_target(self):
        target = AsyncMock()
        target.run.return_value = CommandResult(command="ls", exit_code=0)
        loop, _ = _loop(target, "ls", "exit")
        await loop.run()
        assert target.run.await_args.kwargs["cancel"] is not None

    async def test_forward_sigint_sets_cancel_and_interrupts(self):
        target = AsyncMock()
        loop, _ = _loop(target)
        cancel = asyncio.Event()
        loop._forward_sigint(cancel)
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert cancel.is_set()
        target.interrupt.assert_awaited_once()

    async def test_host_sigint_during_command(self):
        target = AsyncMock()

        async def run(command, *, on_line=None, cancel=None):
            os.kill(os.getpid(), signal.SIGINT)
            await asyncio.wait_for(cancel.wait(), 2.0)
            return CommandResult(command=command, exit_code=-1, interrupted=True)

        target.run.side_effect = run
        loop, cap = _loop(target)
        result = await loop.run_command("sleep 9")
        for _ in range(3):
            await asyncio.sleep(0)

        assert result.interrupted
        target.interrupt.assert_awaited_once()
        assert cap.text == "^C\n[exit -1]\n"
        # Handler is gone again; the next ^C at the prompt is a KeyboardInterrupt
        assert signal.getsignal(signal.SIGINT) is signal.default_int_handler
