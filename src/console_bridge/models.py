"""Data models for console-bridge."""

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from console_bridge.constants import END_MARKER_PREFIX, MARKER_SUFFIX, START_MARKER_PREFIX


class BootState(str, Enum):
    """Guest boot progress as observed on the console.

    Ordered: a session only ever moves forward through these values.
    """

    BOOTING = "booting"
    OS_READY = "os_ready"
    SHELL_READY = "shell_ready"
    RESPONSIVE = "responsive"

    @property
    def rank(self) -> int:
        return _BOOT_ORDER.index(self)


_BOOT_ORDER = list(BootState)


class Readiness(str, Enum):
    """Outcome of a readiness wait."""

    READY = "ready"
    TIMED_OUT = "timed_out"


class LineKind(str, Enum):
    """Classification of one line typed into the interactive loop."""

    EMPTY = "empty"
    EXIT = "exit"
    CLEAR = "clear"
    INTERRUPT = "interrupt"
    COMMAND = "command"


class CommandInvocation(BaseModel):
    """One marker-delimited command submitted to the guest shell."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Unique invocation id (timestamp + random suffix)")
    raw_command: str = Field(description="Command text as typed by the caller")

    @property
    def start_marker(self) -> str:
        return f"{START_MARKER_PREFIX}{self.id}{MARKER_SUFFIX}"

    @property
    def end_marker(self) -> str:
        return f"{END_MARKER_PREFIX}{self.id}{MARKER_SUFFIX}"


class CommandResult(BaseModel):
    """Result of one bridge invocation."""

    command: str = Field(description="Command as submitted")
    output: list[str] = Field(default_factory=list, description="Lines captured between START and END")
    exit_code: int = Field(description="Guest exit status (-1 when unknown)")
    interrupted: bool = Field(default=False, description="True when cancelled before END was seen")
    duration_ms: int = Field(default=0, ge=0, description="Wall time from write to END in ms")

    @property
    def stdout(self) -> str:
        """Captured output joined with newlines."""
        return "\n".join(self.output)


class SessionState(BaseModel):
    """Persisted description of a running session, read by attaching front-ends."""

    pid: int = Field(gt=0, description="QEMU process id")
    console_device: Path = Field(description="Guest serial console PTY")
    transcript: Path = Field(description="Append-only console transcript")
    boot_log: Path = Field(description="QEMU stdout/stderr log")
    monitor_socket: Path = Field(description="QMP control socket")
    fifo: Path | None = Field(default=None, description="Headless command FIFO, when enabled")
    boot_state: BootState = Field(default=BootState.BOOTING)
