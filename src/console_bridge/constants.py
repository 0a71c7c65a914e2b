"""Constants for console-bridge configuration and protocol."""

from typing import Final

# ============================================================================
# Marker Protocol
# ============================================================================

START_MARKER_PREFIX: Final[str] = "__HOST_START__"
"""Prefix of the line printed by the guest right before command output."""

END_MARKER_PREFIX: Final[str] = "__HOST_END__"
"""Prefix of the line printed by the guest right after command output."""

MARKER_SUFFIX: Final[str] = "__"
"""Suffix closing both markers after the invocation id."""

EXIT_FIELD: Final[str] = "EXIT="
"""Field on the END line carrying the command's exit status."""

UNKNOWN_EXIT_CODE: Final[int] = -1
"""Sentinel exit code for interrupted invocations or an unparseable END line."""

INTERRUPT_BYTE: Final[bytes] = b"\x03"
"""ETX (Ctrl-C) byte; the guest tty turns it into SIGINT for the foreground job."""

CARRIAGE_RETURN: Final[bytes] = b"\r"
"""Raw CR written to the console to nudge a login prompt or a stuck line."""

# ============================================================================
# Console Discovery
# ============================================================================

PTY_ANNOUNCE_PATTERN: Final[str] = r"char device redirected to (/dev/pts/[0-9]+)"
"""QEMU's startup line announcing the serial console PTY (first group = path)."""

DISCOVERY_ATTEMPTS: Final[int] = 60
"""Number of scans of the startup log before giving up on the console device."""

DISCOVERY_INTERVAL_SECONDS: Final[float] = 1.0
"""Delay between startup log scans."""

# ============================================================================
# Boot Readiness
# ============================================================================

OS_READY_PATTERN: Final[str] = r"RISC-V Ubuntu image is ready\.|Ubuntu .* ttyS0|cloud-init.*finished"
"""Transcript pattern signalling the guest OS has finished booting."""

PROMPT_PATTERN: Final[str] = r"login:|# $|~\$ $|root@|ubuntu@"
"""Transcript pattern signalling a login or shell prompt is visible."""

OS_READY_TIMEOUT_SECONDS: Final[float] = 600.0
"""Time allowed for the OS boot marker (software emulated guests are slow)."""

PROMPT_TIMEOUT_SECONDS: Final[float] = 30.0
"""Time allowed for the prompt to appear, before and after the nudge."""

SELF_TEST_TIMEOUT_SECONDS: Final[float] = 10.0
"""Time allowed for a shell self-test token to echo back."""

MATCH_WINDOW_CHARS: Final[int] = 4096
"""Snapshot tail kept in front of newly tailed text when re-testing a pattern."""

SELF_TEST_TOKEN_PREFIX: Final[str] = "__BRIDGE_READY__"
"""Prefix of the unique token printed by the shell self-test."""

DEFAULT_PROBE_COMMANDS: Final[tuple[str, ...]] = ("uname -a", "head -n 20 /proc/cpuinfo")
"""Raw commands sent once the guest is responsive, each behind an echo banner."""

# ============================================================================
# Console I/O
# ============================================================================

WRITE_RETRY_ATTEMPTS: Final[int] = 3
"""Attempts to open and write the console device before ConsoleWriteError."""

WRITE_RETRY_BACKOFF_SECONDS: Final[float] = 0.2
"""Fixed delay between console write attempts."""

TRANSCRIPT_POLL_INTERVAL_SECONDS: Final[float] = 0.1
"""Tail readers re-check the transcript file at least this often."""

READ_CHUNK_SIZE: Final[int] = 4096
"""Bytes requested per read from the console device or FIFO."""

# ============================================================================
# Process Lifecycle
# ============================================================================

TEARDOWN_GRACE_SECONDS: Final[float] = 1.0
"""Delay between SIGTERM and SIGKILL when stopping QEMU."""

KILL_TIMEOUT_SECONDS: Final[float] = 2.0
"""Time to wait for the process to be reaped after SIGKILL."""

MONITOR_SOCKET_TIMEOUT_SECONDS: Final[float] = 10.0
"""Time allowed for QEMU to create and listen on its QMP socket."""

MONITOR_CONNECT_TIMEOUT_SECONDS: Final[float] = 5.0
"""QMP handshake timeout."""

BOOT_LOG_RING_SIZE: Final[int] = 200
"""Startup log lines kept in memory for error reports."""

# ============================================================================
# CLI Exit Codes
# ============================================================================

EXIT_PRECONDITION: Final[int] = 1
"""Exit code when no session is running, the transcript is missing, or discovery failed."""

EXIT_TIMEOUT: Final[int] = 124
"""Exit code for `run --timeout` expiry (timeout(1) convention)."""

EXIT_BRIDGE_ERROR: Final[int] = 125
"""Exit code when the bridge itself failed (console unavailable, closed session)."""
