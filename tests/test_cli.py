"""Tests for the cbridge command line and its exit-code mapping."""

import asyncio
import os

import pytest
from click.testing import CliRunner

from console_bridge.cli import EXIT_CLI_ERROR, main
from console_bridge.constants import EXIT_BRIDGE_ERROR, EXIT_PRECONDITION, EXIT_TIMEOUT
from console_bridge.exceptions import CommandValidationError, ConsoleWriteError
from console_bridge.models import BootState, CommandResult, SessionState
from console_bridge.session import Session


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def log_dir(tmp_path):
    return tmp_path / "session"


def _invoke(runner, log_dir, *args):
    return runner.invoke(main, ["--log-dir", str(log_dir), *args])


class _FakeSession:
    """Attached-session double scripted with one run() outcome."""

    def __init__(self, outcome):
        self.outcome = outcome
        self.interrupts = 0
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *_exc):
        self.closed = True

    async def run(self, command, *, on_line=None, cancel=None):
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        if self.outcome == "hang":
            await asyncio.sleep(30)
        for line in self.outcome.output:
            on_line(line)
        return self.outcome

    async def interrupt(self):
        self.interrupts += 1


@pytest.fixture
def fake_attach(monkeypatch):
    def install(outcome):
        session = _FakeSession(outcome)

        async def attach(cls, settings):
            return session

        monkeypatch.setattr(Session, "attach", classmethod(attach))
        return session

    return install


# ============================================================================
# No running session
# ============================================================================


class TestWithoutSession:
    def test_status(self, runner, log_dir):
        result = _invoke(runner, log_dir, "status")
        assert result.exit_code == EXIT_PRECONDITION
        assert "stopped" in result.output

    def test_stop(self, runner, log_dir):
        result = _invoke(runner, log_dir, "stop")
        assert result.exit_code == EXIT_PRECONDITION
        assert "no running session" in result.output

    def test_shell(self, runner, log_dir):
        result = _invoke(runner, log_dir, "shell")
        assert result.exit_code == EXIT_PRECONDITION
        assert "No usable session" in result.output

    def test_run(self, runner, log_dir):
        assert _invoke(runner, log_dir, "run", "true").exit_code == EXIT_BRIDGE_ERROR

    def test_send(self, runner, log_dir):
        assert _invoke(runner, log_dir, "send", "ls").exit_code == EXIT_PRECONDITION

    def test_send_needs_line_or_interrupt(self, runner, log_dir):
        result = _invoke(runner, log_dir, "send")
        assert result.exit_code == EXIT_CLI_ERROR
        assert "Provide LINE or --interrupt" in result.output


class TestStatus:
    def test_running_session(self, runner, log_dir):
        log_dir.mkdir()
        state = SessionState(
            pid=os.getpid(),
            console_device="/dev/pts/4",
            transcript=log_dir / "console.log",
            boot_log=log_dir / "qemu.boot.log",
            monitor_socket=log_dir / "qemu-monitor.sock",
            fifo=log_dir / "guest.in",
            boot_state=BootState.RESPONSIVE,
        )
        (log_dir / "session.json").write_text(state.model_dump_json())
        result = _invoke(runner, log_dir, "status")
        assert result.exit_code == 0
        assert "running" in result.output
        assert "responsive" in result.output
        assert "/dev/pts/4" in result.output


# ============================================================================
# run: exit-code mapping
# ============================================================================


class TestRun:
    def test_guest_status_propagates(self, runner, log_dir, fake_attach):
        fake_attach(CommandResult(command="exit 42", output=["bye"], exit_code=42))
        result = _invoke(runner, log_dir, "run", "exit 42")
        assert result.exit_code == 42
        assert "bye" in result.output

    def test_success(self, runner, log_dir, fake_attach):
        session = fake_attach(CommandResult(command="true", exit_code=0))
        assert _invoke(runner, log_dir, "run", "true").exit_code == 0
        assert session.closed

    def test_timeout_interrupts_guest(self, runner, log_dir, fake_attach):
        session = fake_attach("hang")
        result = _invoke(runner, log_dir, "run", "sleep 100", "--timeout", "0.1")
        assert result.exit_code == EXIT_TIMEOUT
        assert session.interrupts == 1
        assert "Command timed out" in result.output

    def test_console_failure(self, runner, log_dir, fake_attach):
        fake_attach(ConsoleWriteError("console write failed"))
        assert _invoke(runner, log_dir, "run", "ls").exit_code == EXIT_BRIDGE_ERROR

    def test_invalid_command(self, runner, log_dir, fake_attach):
        fake_attach(CommandValidationError("command must be a single line"))
        assert _invoke(runner, log_dir, "run", "a\nb").exit_code == EXIT_CLI_ERROR

    def test_unknown_status(self, runner, log_dir, fake_attach):
        fake_attach(CommandResult(command="ls", exit_code=-1))
        result = _invoke(runner, log_dir, "run", "ls")
        assert result.exit_code == EXIT_BRIDGE_ERROR
        assert "Unknown exit status" in result.output


class TestVersion:
    def test_version_flag(self, runner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "console-bridge" in result.output
