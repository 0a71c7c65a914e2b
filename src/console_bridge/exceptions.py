"""Exception hierarchy for console-bridge.

All exceptions inherit from BridgeError.

Hierarchy:
    BridgeError (base)
    ├── TransientError (retryable / degradable marker base)
    │   ├── ConsoleWriteError        ← console device unavailable after retries
    │   └── ReadinessTimeoutError    ← boot stage not observed in time (soft)
    ├── PermanentError (non-retryable marker base)
    │   ├── DiscoveryTimeoutError    ← console device path never announced
    │   ├── VmDependencyError        ← QEMU binary / image missing
    │   ├── PreconditionError        ← no running session, transcript missing
    │   └── SessionClosedError       ← session already closed
    ├── InputValidationError (caller-bug marker base)
    │   └── CommandValidationError   ← command cannot be sent as one line
    ├── ProtocolError
    │   └── MalformedEndMarkerError  ← END seen without a parseable exit code
    └── SessionTeardownError         ← process already gone during teardown
"""

from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base exception for all console-bridge errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(BridgeError):
    """Base for errors that may succeed on retry or that a session can ride out."""


class PermanentError(BridgeError):
    """Base for errors that won't succeed on retry."""


# =============================================================================
# Transient Errors
# =============================================================================


class ConsoleWriteError(TransientError):
    """Writing to the console device failed after all retry attempts.

    The device (PTY or FIFO) was missing, had no reader, or rejected the
    write.  Each attempt is retried with a short backoff before this is
    surfaced to the caller.
    """


class ReadinessTimeoutError(TransientError):
    """A boot readiness stage was not observed before its timeout.

    Soft signal: the readiness detector logs it and the session continues
    in a degraded ("assume ready") state.  Never fatal to a session.
    """


# =============================================================================
# Permanent Errors
# =============================================================================


class DiscoveryTimeoutError(PermanentError):
    """The console device path never appeared in the startup log.

    Fatal to session startup: without a device there is nothing to talk to.
    """


class VmDependencyError(PermanentError):
    """Required binary or disk image is not available."""


class PreconditionError(PermanentError):
    """A front-end precondition does not hold.

    Raised when attaching to a session that is not running or whose
    transcript file is missing.
    """


class SessionClosedError(PermanentError):
    """Raised when using a session after it has been closed."""


# =============================================================================
# Input / Protocol Errors
# =============================================================================


class InputValidationError(BridgeError):
    """Base for input validation errors (caller bugs, not guest failures).

    The session is unaffected and can be reused.
    """


class CommandValidationError(InputValidationError):
    """Command cannot be injected as a single console line.

    Raised for commands containing newlines or NUL bytes.
    """


class ProtocolError(BridgeError):
    """Marker protocol violation observed in the transcript."""


class MalformedEndMarkerError(ProtocolError):
    """END marker observed without a parseable exit status.

    Tolerated by the bridge: the invocation completes and reports the
    unknown exit code sentinel instead of failing.

    Attributes:
        line: The raw END line as it appeared in the transcript
    """

    def __init__(self, message: str, line: str, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx.update({"line": line})
        super().__init__(message, ctx)
        self.line = line


class SessionTeardownError(BridgeError):
    """Process was already gone when teardown tried to signal it.

    Cleanup paths treat this as success (teardown is idempotent).
    """
