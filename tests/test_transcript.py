"""Tests for the append-only transcript and its tail readers."""

import asyncio
import contextlib

from console_bridge.transcript import Transcript


async def _collect(transcript: Transcript, offset: int, count: int, timeout: float = 2.0) -> list[str]:
    lines: list[str] = []
    async with asyncio.timeout(timeout):
        async with contextlib.aclosing(transcript.follow(offset)) as it:
            async for line in it:
                lines.append(line)
                if len(lines) == count:
                    break
    return lines


class TestProducer:
    async def test_append_grows_monotonically(self, transcript):
        assert transcript.size() == 0
        await transcript.append(b"abc")
        await transcript.append(b"def\n")
        assert transcript.size() == 7
        assert await transcript.read_all() == "abcdef\n"

    async def test_empty_append_is_noop(self, transcript):
        await transcript.append(b"")
        assert transcript.size() == 0

    async def test_snapshot_offset_matches_bytes(self, transcript):
        await transcript.append("héllo\n".encode())
        text, offset = await transcript.snapshot()
        assert text == "héllo\n"
        assert offset == len("héllo\n".encode())

    async def test_missing_file_reads_empty(self, tmp_path):
        t = Transcript(tmp_path / "nope.log")
        assert t.size() == 0
        assert await t.read_all() == ""


class TestFollow:
    async def test_yields_complete_lines_without_crlf(self, transcript):
        await transcript.append(b"one\r\ntwo\n")
        assert await _collect(transcript, 0, 2) == ["one", "two"]

    async def test_partial_line_held_until_newline(self, transcript):
        async def produce():
            await asyncio.sleep(0.05)
            await transcript.append(b"par")
            await asyncio.sleep(0.05)
            await transcript.append(b"tial\r\n")

        task = asyncio.create_task(produce())
        assert await _collect(transcript, 0, 1) == ["partial"]
        await task

    async def test_starts_at_offset(self, transcript):
        await transcript.append(b"old line\n")
        offset = transcript.size()
        await transcript.append(b"new line\n")
        assert await _collect(transcript, offset, 1) == ["new line"]

    async def test_default_offset_is_current_end(self, transcript):
        await transcript.append(b"before\n")
        gen = transcript.follow()
        first = asyncio.ensure_future(gen.__anext__())
        await asyncio.sleep(0.05)
        await transcript.append(b"after\n")
        assert await asyncio.wait_for(first, 2.0) == "after"
        await gen.aclose()

    async def test_stop_event_ends_iteration(self, transcript):
        stop = asyncio.Event()
        lines: list[str] = []

        async def consume():
            async for line in transcript.follow(0, stop):
                lines.append(line)

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, 1.0)
        assert lines == []

    async def test_external_writer_seen_by_polling(self, transcript):
        """Appends made by another process never notify; polling picks them up."""

        async def produce():
            await asyncio.sleep(0.05)
            with transcript.path.open("ab") as f:
                f.write(b"from elsewhere\n")

        task = asyncio.create_task(produce())
        assert await _collect(transcript, 0, 1) == ["from elsewhere"]
        await task

    async def test_multiple_readers_see_same_lines(self, transcript):
        readers = [asyncio.create_task(_collect(transcript, 0, 2)) for _ in range(3)]
        await asyncio.sleep(0.02)
        await transcript.append(b"a\nb\n")
        results = await asyncio.gather(*readers)
        assert results == [["a", "b"]] * 3

    async def test_follow_text_yields_partial_prompt(self, transcript):
        await transcript.append(b"root@vm:~# ")
        async with contextlib.aclosing(transcript.follow_text(0)) as it:
            text = await asyncio.wait_for(it.__anext__(), 1.0)
        assert text == "root@vm:~# "
