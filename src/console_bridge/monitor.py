"""QEMU monitor access over QMP, used to press keys in the guest.

A guest sitting at a blank login screen often needs an Enter before it
prints a prompt. ``sendkey`` only exists as a human monitor command, so it
is tunnelled through QMP's ``human-monitor-command``.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Self

from qemu.qmp import ConnectError, QMPClient  # type: ignore[import-untyped]

from console_bridge._logging import get_logger
from console_bridge.constants import MONITOR_CONNECT_TIMEOUT_SECONDS

_logger = get_logger(__name__)


class MonitorError(Exception):
    """The monitor could not be reached or refused a command."""


class MonitorClient:
    """One QMP connection.

    ``async with MonitorClient(sock) as mon: await mon.send_key("ret")``
    """

    def __init__(self, socket_path: str | Path):
        self.socket_path = Path(socket_path)
        self._client: QMPClient | None = None

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.disconnect()

    async def connect(self, timeout: float = MONITOR_CONNECT_TIMEOUT_SECONDS) -> None:
        """Open the QMP session (raises MonitorError on failure)."""
        client = QMPClient("console-bridge")
        self._client = client
        try:
            async with asyncio.timeout(timeout):
                await client.connect(str(self.socket_path))
        except TimeoutError as e:
            await self.disconnect()
            raise MonitorError(f"no QMP greeting from {self.socket_path} within {timeout}s") from e
        except (ConnectError, OSError) as e:
            await self.disconnect()
            raise MonitorError(f"cannot connect to {self.socket_path}: {e}") from e
        _logger.debug("QMP connected", extra={"socket": str(self.socket_path)})

    async def disconnect(self) -> None:
        """Close the session; a no-op when not connected."""
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.disconnect()
        except Exception:  # noqa: BLE001
            _logger.debug("QMP disconnect raised", exc_info=True)

    async def human_command(self, command_line: str, timeout: float = 5.0) -> str:
        """Run one human monitor command and return whatever text it printed."""
        if self._client is None:
            raise MonitorError("QMP client not connected")
        try:
            async with asyncio.timeout(timeout):
                reply = await self._client.execute("human-monitor-command", {"command-line": command_line})
        except TimeoutError as e:
            raise MonitorError(f"{command_line!r} got no reply within {timeout}s") from e
        except Exception as e:
            raise MonitorError(f"{command_line!r} failed: {e}") from e
        return str(reply or "")

    async def send_key(self, key: str) -> None:
        """Press ``key`` (a QEMU key name such as ``ret``) in the guest.

        sendkey prints nothing on success; any text is an error message.
        """
        complaint = (await self.human_command(f"sendkey {key}")).strip()
        if complaint:
            raise MonitorError(f"sendkey {key} rejected: {complaint}")
        _logger.debug("Key sent", extra={"key": key})


async def monitor_sendkey(socket_path: Path, key: str) -> bool:
    """Connect, press ``key``, disconnect. Logs and returns False on any monitor failure."""
    try:
        async with MonitorClient(socket_path) as monitor:
            await monitor.send_key(key)
    except MonitorError as e:
        _logger.warning("Monitor sendkey failed", extra={"key": key, "socket": str(socket_path), "error": str(e)})
        return False
    return True
