"""Tests for the headless FIFO channel and its client helpers."""

import asyncio
import contextlib
import os
from unittest.mock import AsyncMock

import pytest

from console_bridge.exceptions import ConsoleWriteError, PreconditionError
from console_bridge.headless import HeadlessChannel, ensure_fifo, send_bytes, send_line


class TestEnsureFifo:
    def test_creates_missing(self, tmp_path):
        path = tmp_path / "sub" / "guest.in"
        assert ensure_fifo(path) is True
        assert path.is_fifo()

    def test_reuses_existing(self, tmp_path):
        path = tmp_path / "guest.in"
        os.mkfifo(path)
        assert ensure_fifo(path) is False

    def test_rejects_regular_file(self, tmp_path):
        path = tmp_path / "guest.in"
        path.write_text("not a fifo")
        with pytest.raises(PreconditionError):
            ensure_fifo(path)


@contextlib.asynccontextmanager
async def _running_channel(path, console, write_lock=None):
    channel = HeadlessChannel(path, console, write_lock=write_lock)
    task = asyncio.create_task(channel.run())
    async with asyncio.timeout(2.0):
        while not path.exists():
            await asyncio.sleep(0.01)
    await asyncio.sleep(0.05)
    try:
        yield channel
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


async def _wait_writes(console, count):
    async with asyncio.timeout(2.0):
        while console.write.await_count < count:
            await asyncio.sleep(0.01)


class TestHeadlessChannel:
    async def test_line_forwarded_verbatim_with_newline(self, tmp_path):
        console = AsyncMock()
        path = tmp_path / "guest.in"
        async with _running_channel(path, console) as channel:
            await send_line(path, "ls -la /tmp")
            await _wait_writes(console, 1)
        console.write.assert_awaited_once_with(b"ls -la /tmp\n")
        assert channel.lines_forwarded == 1

    async def test_no_markers_added(self, tmp_path):
        console = AsyncMock()
        path = tmp_path / "guest.in"
        async with _running_channel(path, console):
            await send_line(path, "echo hi")
            await _wait_writes(console, 1)
        sent = console.write.await_args.args[0]
        assert b"__HOST_" not in sent

    async def test_lone_control_byte_forwarded_immediately(self, tmp_path):
        console = AsyncMock()
        path = tmp_path / "guest.in"
        async with _running_channel(path, console):
            await send_bytes(path, b"\x03")
            await _wait_writes(console, 1)
        console.write.assert_awaited_once_with(b"\x03")

    async def test_partial_text_held_until_newline(self, tmp_path):
        console = AsyncMock()
        path = tmp_path / "guest.in"
        async with _running_channel(path, console):
            await send_bytes(path, b"unam")
            await asyncio.sleep(0.1)
            assert console.write.await_count == 0
            await send_bytes(path, b"e -a\n")
            await _wait_writes(console, 1)
        console.write.assert_awaited_once_with(b"uname -a\n")

    async def test_survives_writer_disconnects(self, tmp_path):
        console = AsyncMock()
        path = tmp_path / "guest.in"
        async with _running_channel(path, console) as channel:
            for i in range(3):
                await send_line(path, f"echo {i}")
            await _wait_writes(console, 3)
        assert [c.args[0] for c in console.write.await_args_list] == [b"echo 0\n", b"echo 1\n", b"echo 2\n"]
        assert channel.lines_forwarded == 3

    async def test_control_byte_after_partial_line_not_held(self, tmp_path):
        console = AsyncMock()
        path = tmp_path / "guest.in"
        async with _running_channel(path, console):
            await send_bytes(path, b"cat\x03")
            await _wait_writes(console, 1)
            assert console.write.await_args.args[0] == b"\x03"
            await send_bytes(path, b"\n")
            await _wait_writes(console, 2)
        assert console.write.await_args.args[0] == b"cat\n"

    async def test_line_waits_for_write_lock(self, tmp_path):
        console = AsyncMock()
        path = tmp_path / "guest.in"
        lock = asyncio.Lock()
        await lock.acquire()
        async with _running_channel(path, console, write_lock=lock):
            await send_line(path, "echo queued")
            await asyncio.sleep(0.15)
            assert console.write.await_count == 0

            # Interrupts must still reach the command holding the lock
            await send_bytes(path, b"\x03")
            await _wait_writes(console, 1)
            assert console.write.await_args.args[0] == b"\x03"

            lock.release()
            await _wait_writes(console, 2)
        assert console.write.await_args.args[0] == b"echo queued\n"

    async def test_line_then_interrupt_keep_order_when_idle(self, tmp_path):
        console = AsyncMock()
        path = tmp_path / "guest.in"
        async with _running_channel(path, console):
            await send_bytes(path, b"sleep 10\n\x03")
            await _wait_writes(console, 2)
        assert [c.args[0] for c in console.write.await_args_list] == [b"sleep 10\n", b"\x03"]

    async def test_console_failure_drops_line_and_continues(self, tmp_path):
        console = AsyncMock()
        console.write.side_effect = [ConsoleWriteError("busy"), None]
        path = tmp_path / "guest.in"
        async with _running_channel(path, console):
            await send_line(path, "first")
            await _wait_writes(console, 1)
            await send_line(path, "second")
            await _wait_writes(console, 2)
        assert console.write.await_args.args[0] == b"second\n"


class TestClientHelpers:
    async def test_missing_fifo(self, tmp_path):
        with pytest.raises(PreconditionError):
            await send_line(tmp_path / "guest.in", "ls")

    async def test_not_a_fifo(self, tmp_path):
        path = tmp_path / "guest.in"
        path.write_text("")
        with pytest.raises(PreconditionError):
            await send_bytes(path, b"\x03")

    async def test_no_channel_reading(self, tmp_path):
        path = tmp_path / "guest.in"
        os.mkfifo(path)
        with pytest.raises(ConsoleWriteError):
            await send_line(path, "ls", retries=1, backoff=0)
