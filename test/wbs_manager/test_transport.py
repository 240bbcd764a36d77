"""
Tests for newline-delimited framing.
"""

import asyncio
import json

import pytest

from wbs_manager.transport import StdioTransport

from conftest import BufferWriter, PipeWriter, make_pipe


def _reader_with(data: bytes, limit: int = 2 ** 16) -> asyncio.StreamReader:
    reader = asyncio.StreamReader(limit=limit)
    reader.feed_data(data)
    reader.feed_eof()
    return reader


async def _collect(transport):
    return [line async for line in transport.lines()]


class TestReading:

    @pytest.mark.asyncio
    async def test_lines_until_eof(self):
        transport = StdioTransport(_reader_with(b'{"a": 1}\n{"b": 2}\r\n'), BufferWriter())
        assert await _collect(transport) == ['{"a": 1}', '{"b": 2}']
        assert transport.closed

    @pytest.mark.asyncio
    async def test_partial_last_line_is_returned(self):
        transport = StdioTransport(_reader_with(b'first\nsecond'), BufferWriter())
        assert await _collect(transport) == ["first", "second"]

    @pytest.mark.asyncio
    async def test_empty_stream(self):
        transport = StdioTransport(_reader_with(b""), BufferWriter())
        assert await transport.read_line() is None

    @pytest.mark.asyncio
    async def test_oversized_line_is_skipped(self):
        data = b"x" * 100 + b"\n" + b"short\n"
        transport = StdioTransport(_reader_with(data, limit=16), BufferWriter())
        assert await _collect(transport) == ["short"]

    @pytest.mark.asyncio
    async def test_oversized_line_arriving_in_pieces(self):
        reader = asyncio.StreamReader(limit=16)
        writer = PipeWriter(reader)
        transport = StdioTransport(reader, BufferWriter())

        async def feed():
            for _ in range(10):
                writer.write(b"y" * 10)
                await asyncio.sleep(0)
            writer.write(b"\nok\n")
            writer.close()

        feeder = asyncio.create_task(feed())
        assert await _collect(transport) == ["ok"]
        await feeder

    @pytest.mark.asyncio
    async def test_invalid_utf8_is_replaced(self):
        transport = StdioTransport(_reader_with(b"\xff\xfe\n"), BufferWriter())
        assert await transport.read_line() == "\ufffd\ufffd"


class TestWriting:

    @pytest.mark.asyncio
    async def test_send_writes_one_line_and_flushes(self):
        sink = BufferWriter()
        transport = StdioTransport(_reader_with(b""), sink)
        await transport.send({"jsonrpc": "2.0", "id": 1, "result": {"text": "✅ done"}})
        assert sink.flushes == 1
        assert len(sink.lines) == 1
        assert json.loads(sink.lines[0])["result"]["text"] == "✅ done"

    @pytest.mark.asyncio
    async def test_send_uses_drain_when_available(self):
        reader, writer = make_pipe()
        transport = StdioTransport(_reader_with(b""), writer)
        await transport.send({"id": 1})
        assert writer.written == [b'{"id": 1}\n']
        assert (await reader.readline()) == b'{"id": 1}\n'

    @pytest.mark.asyncio
    async def test_concurrent_sends_do_not_interleave(self):
        sink = BufferWriter()
        transport = StdioTransport(_reader_with(b""), sink)
        await asyncio.gather(*(transport.send({"id": i, "pad": "z" * 1000}) for i in range(20)))
        assert sorted(json.loads(line)["id"] for line in sink.lines) == list(range(20))

    @pytest.mark.asyncio
    async def test_close_closes_writer(self):
        reader = asyncio.StreamReader()
        _, writer = make_pipe()
        transport = StdioTransport(reader, writer)
        transport.close()
        assert transport.closed
        assert writer.closed
