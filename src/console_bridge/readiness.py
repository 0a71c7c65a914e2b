"""Boot readiness detection from the console transcript.

A readiness wait never fails hard: on timeout it logs a warning and the
session carries on in a degraded "assume ready" state. Boot state only moves
forward.

Stage policy (``run_boot_sequence``):
1. OS boot marker seen            -> OS_READY
2. Prompt visible (after nudging) -> SHELL_READY
3. Shell echoes a unique token    -> RESPONSIVE
"""

from __future__ import annotations

import asyncio
import contextlib
import re
import shlex
from typing import TYPE_CHECKING

from console_bridge._logging import get_logger
from console_bridge.constants import (
    MATCH_WINDOW_CHARS,
    MARKER_SUFFIX,
    OS_READY_PATTERN,
    OS_READY_TIMEOUT_SECONDS,
    PROMPT_PATTERN,
    PROMPT_TIMEOUT_SECONDS,
    SELF_TEST_TIMEOUT_SECONDS,
    SELF_TEST_TOKEN_PREFIX,
)
from console_bridge.exceptions import ConsoleWriteError, ReadinessTimeoutError
from console_bridge.models import BootState, Readiness
from console_bridge.monitor import monitor_sendkey
from console_bridge.protocol import new_invocation_id

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

    from console_bridge.console import ConsoleDevice
    from console_bridge.transcript import Transcript

logger = get_logger(__name__)


def _normalize(text: str) -> str:
    # Serial output ends lines with CRLF; "$" anchors must see bare LF
    return text.replace("\r", "")


class ReadinessDetector:
    """Gate that watches the transcript for boot progress."""

    def __init__(
        self,
        transcript: Transcript,
        console: ConsoleDevice,
        *,
        monitor_socket: Path | None = None,
        os_ready_pattern: str = OS_READY_PATTERN,
        prompt_pattern: str = PROMPT_PATTERN,
        os_ready_timeout: float = OS_READY_TIMEOUT_SECONDS,
        prompt_timeout: float = PROMPT_TIMEOUT_SECONDS,
        self_test_timeout: float = SELF_TEST_TIMEOUT_SECONDS,
    ) -> None:
        self.transcript = transcript
        self.console = console
        self.monitor_socket = monitor_socket
        self.os_ready_pattern = os_ready_pattern
        self.prompt_pattern = prompt_pattern
        self.os_ready_timeout = os_ready_timeout
        self.prompt_timeout = prompt_timeout
        self.self_test_timeout = self_test_timeout
        self._satisfied: set[str] = set()
        self.state = BootState.BOOTING

    # -------------------------------------------------------------------------
    # Pattern waits
    # -------------------------------------------------------------------------

    async def wait_for_pattern(self, pattern: str, timeout: float) -> Readiness:
        """Wait until *pattern* matches the transcript.

        Tests the transcript as it is now, then tails newly appended text into
        a scratch buffer and re-tests snapshot plus scratch until a match or
        the timeout. A pattern that matched once returns READY immediately.

        Args:
            pattern: Regex, applied in multiline mode with CRs removed
            timeout: Seconds to wait for new output

        Returns:
            Readiness.READY or Readiness.TIMED_OUT (never raises on timeout)
        """
        if pattern in self._satisfied:
            return Readiness.READY

        regex = re.compile(pattern, re.MULTILINE)
        snapshot, offset = await self.transcript.snapshot()
        snapshot = _normalize(snapshot)
        if regex.search(snapshot):
            self._satisfied.add(pattern)
            return Readiness.READY

        # Everything before the window has already failed to match on its own
        union = snapshot[-MATCH_WINDOW_CHARS:]
        try:
            async with asyncio.timeout(timeout), contextlib.aclosing(self.transcript.follow_text(offset)) as chunks:
                async for text in chunks:
                    union += _normalize(text)
                    if regex.search(union):
                        self._satisfied.add(pattern)
                        return Readiness.READY
        except TimeoutError:
            err = ReadinessTimeoutError(
                f"Pattern not seen within {timeout}s",
                {"pattern": pattern, "timeout": timeout},
            )
            logger.warning(err.message, extra={**err.context, "error_type": type(err).__name__})
        return Readiness.TIMED_OUT

    async def visible(self, pattern: str) -> bool:
        """Test *pattern* against the transcript as it is now, without waiting."""
        if pattern in self._satisfied:
            return True
        snapshot, _ = await self.transcript.snapshot()
        if re.search(pattern, _normalize(snapshot), re.MULTILINE):
            self._satisfied.add(pattern)
            return True
        return False

    def advance(self, state: BootState) -> None:
        """Move boot state forward; requests to go backwards are ignored."""
        if state.rank <= self.state.rank:
            return
        logger.info("Boot state advanced", extra={"from": self.state.value, "to": state.value})
        self.state = state

    # -------------------------------------------------------------------------
    # Console actions
    # -------------------------------------------------------------------------

    async def nudge(self) -> None:
        """Press Enter via the monitor and send a raw CR on the console."""
        if self.monitor_socket is not None:
            await monitor_sendkey(self.monitor_socket, "ret")
        try:
            await self.console.send_cr()
        except ConsoleWriteError as e:
            logger.warning("Console nudge failed", extra={"error": e.message, **e.context})

    async def self_test(self) -> bool:
        """Verify the shell executes input by echoing a fresh unique token.

        One retry after an extra CR, with a new token so a late echo of the
        first one cannot count.
        """
        for attempt in range(2):
            token_id = new_invocation_id() + MARKER_SUFFIX
            token = SELF_TEST_TOKEN_PREFIX + token_id
            line = f"printf '%s%s\\n' {shlex.quote(SELF_TEST_TOKEN_PREFIX)} {shlex.quote(token_id)}"
            try:
                await self.console.write_line(line)
            except ConsoleWriteError as e:
                logger.warning("Self-test write failed", extra={"error": e.message, **e.context})
                return False
            if await self.wait_for_pattern(re.escape(token), self.self_test_timeout) is Readiness.READY:
                return True
            if attempt == 0:
                logger.info("Shell self-test token not seen, retrying once")
                try:
                    await self.console.send_cr()
                except ConsoleWriteError as e:
                    logger.warning("Console nudge failed", extra={"error": e.message, **e.context})
        return False

    async def run_boot_sequence(self) -> BootState:
        """Walk the boot stages in order and return the state reached."""
        if await self.wait_for_pattern(self.os_ready_pattern, self.os_ready_timeout) is Readiness.READY:
            logger.info("Boot-ready line detected")
            self.advance(BootState.OS_READY)
        else:
            logger.info("Boot-ready line not found before timeout; proceeding anyway")

        if not await self.visible(self.prompt_pattern):
            logger.info("Shell prompt not obvious; sending Enter")
            await self.nudge()
        if await self.wait_for_pattern(self.prompt_pattern, self.prompt_timeout) is Readiness.READY:
            self.advance(BootState.SHELL_READY)

        if await self.self_test():
            self.advance(BootState.RESPONSIVE)
        else:
            logger.warning("Guest shell did not answer the self-test; continuing degraded")

        return self.state

    async def send_probes(self, commands: Iterable[str]) -> None:
        """Send raw informational commands, each behind an echo banner.

        Output lands in the transcript only; nothing waits for it.
        """
        for command in commands:
            try:
                await self.console.write_line(f"echo {shlex.quote(f'--- {command} ---')}")
                await self.console.write_line(command)
            except ConsoleWriteError as e:
                logger.warning("Probe command not sent", extra={"command": command, "error": e.message})
                return
