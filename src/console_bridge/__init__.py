"""console-bridge: shell commands over a VM serial console.

Boots a QEMU guest, finds its serial console PTY, waits until the guest
shell answers, and runs commands through the console with their output and
exit status recovered from marker-framed console text.

Quick Start:
    ```python
    from console_bridge import Session, Settings

    async with await Session.start(Settings()) as session:
        result = await session.run("uname -a")
        print(result.stdout, result.exit_code)
    ```

Attach from another process (the guest keeps running on close):
    ```python
    async with await Session.attach(Settings()) as session:
        result = await session.run("exit 42")
        assert result.exit_code == 42
    ```

Requirements:
    - QEMU with a guest exposing a POSIX shell on its serial port
    - Python 3.12+
"""

from importlib.metadata import PackageNotFoundError, version

from console_bridge.bridge import CommandBridge
from console_bridge.exceptions import (
    BridgeError,
    CommandValidationError,
    ConsoleWriteError,
    DiscoveryTimeoutError,
    InputValidationError,
    MalformedEndMarkerError,
    PermanentError,
    PreconditionError,
    ProtocolError,
    ReadinessTimeoutError,
    SessionClosedError,
    SessionTeardownError,
    TransientError,
    VmDependencyError,
)
from console_bridge.models import BootState, CommandResult, LineKind, Readiness, SessionState
from console_bridge.session import Session
from console_bridge.settings import Settings

try:
    __version__ = version("console-bridge")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"

__all__ = [
    "BootState",
    "BridgeError",
    "CommandBridge",
    "CommandResult",
    "CommandValidationError",
    "ConsoleWriteError",
    "DiscoveryTimeoutError",
    "InputValidationError",
    "LineKind",
    "MalformedEndMarkerError",
    "PermanentError",
    "PreconditionError",
    "ProtocolError",
    "Readiness",
    "ReadinessTimeoutError",
    "Session",
    "SessionClosedError",
    "SessionState",
    "SessionTeardownError",
    "Settings",
    "TransientError",
    "VmDependencyError",
    "__version__",
]
