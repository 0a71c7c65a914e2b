"""Marker protocol: invocation ids, command composition and output demux.

Pure functions and a small state machine; no I/O. The bridge feeds
transcript lines into an ``OutputDemuxer`` and writes the line built by
``compose_command`` to the console.

Wire shape of one invocation (a single console line)::

    { printf '%s%s\\n' '__HOST_START__' '<id>__'; ( eval '<cmd>' ); rc=$?;
      printf '%s%s EXIT=%d\\n' '__HOST_END__' '<id>__' "$rc"; } 2>&1

The markers are printed from two separately quoted halves, so the guest
terminal's echo of the injected line never contains a contiguous marker;
only the output of ``printf`` does. The command runs in a subshell so
``exit N`` reports N without ending the login shell.
"""

from __future__ import annotations

import re
import secrets
import shlex
import time
from dataclasses import dataclass, field
from enum import Enum

from console_bridge.constants import (
    END_MARKER_PREFIX,
    EXIT_FIELD,
    MARKER_SUFFIX,
    START_MARKER_PREFIX,
    UNKNOWN_EXIT_CODE,
)
from console_bridge.exceptions import CommandValidationError, MalformedEndMarkerError
from console_bridge.models import CommandInvocation

_EXIT_RE = re.compile(re.escape(EXIT_FIELD) + r"(-?\d+)")


def new_invocation_id() -> str:
    """Nanosecond timestamp plus a random suffix.

    The timestamp keeps ids ordered within a session; the suffix keeps two
    front-ends submitting in the same nanosecond apart.
    """
    return f"{time.time_ns()}{secrets.token_hex(3)}"


def validate_command(command: str) -> None:
    """Reject commands that cannot travel as one console line.

    Raises:
        CommandValidationError: Command contains a newline, CR or NUL byte
    """
    for ch, name in (("\n", "newline"), ("\r", "carriage return"), ("\x00", "NUL byte")):
        if ch in command:
            raise CommandValidationError(
                f"Command must be a single line (contains {name})",
                {"command": command},
            )


def new_invocation(command: str) -> CommandInvocation:
    """Validate *command* and allocate fresh markers for it."""
    validate_command(command)
    return CommandInvocation(id=new_invocation_id(), raw_command=command)


def compose_command(invocation: CommandInvocation) -> str:
    """Build the single guest-shell line for *invocation* (no trailing newline)."""
    marker_id = shlex.quote(invocation.id + MARKER_SUFFIX)
    start = f"printf '%s%s\\n' {shlex.quote(START_MARKER_PREFIX)} {marker_id}"
    end = f"printf '%s%s {EXIT_FIELD}%d\\n' {shlex.quote(END_MARKER_PREFIX)} {marker_id} \"$rc\""
    body = f"( eval {shlex.quote(invocation.raw_command)} )"
    return f"{{ {start}; {body}; rc=$?; {end}; }} 2>&1"


def parse_exit_code(end_line: str, end_marker: str) -> int:
    """Extract the integer after ``EXIT=`` following the END marker.

    Raises:
        MalformedEndMarkerError: No parseable status on the END line
    """
    _, _, tail = end_line.partition(end_marker)
    match = _EXIT_RE.search(tail)
    if match is None:
        raise MalformedEndMarkerError("END marker without exit status", line=end_line)
    return int(match.group(1))


class DemuxState(str, Enum):
    SEEKING = "seeking"
    CAPTURING = "capturing"
    DONE = "done"


@dataclass
class OutputDemuxer:
    """Extract one invocation's output from the interleaved transcript.

    ``Seeking`` drops lines until one contains START (that line is dropped
    too); ``Capturing`` passes lines through until one contains END, whose
    exit status is parsed; ``Done`` ignores everything after.
    """

    invocation: CommandInvocation
    state: DemuxState = DemuxState.SEEKING
    exit_code: int | None = None
    malformed_end: str | None = None
    output: list[str] = field(default_factory=list)

    def feed(self, line: str) -> list[str]:
        """Process one transcript line; return the command output it carries.

        Output without a trailing newline shares its line with END; the text
        before the marker is returned as a final output line.
        """
        if self.state is DemuxState.SEEKING:
            if self.invocation.start_marker in line:
                self.state = DemuxState.CAPTURING
            return []

        if self.state is DemuxState.CAPTURING:
            end_marker = self.invocation.end_marker
            if end_marker not in line:
                self.output.append(line)
                return [line]

            self.state = DemuxState.DONE
            try:
                self.exit_code = parse_exit_code(line, end_marker)
            except MalformedEndMarkerError:
                self.malformed_end = line
                self.exit_code = UNKNOWN_EXIT_CODE
            head = line[: line.index(end_marker)]
            if head:
                self.output.append(head)
                return [head]
            return []

        return []

    @property
    def done(self) -> bool:
        return self.state is DemuxState.DONE
