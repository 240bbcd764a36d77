"""
Newline-delimited JSON-RPC transport over byte streams.

Used on both ends: the server reads its own stdin and writes stdout, the
client reads a spawned server's stdout and writes its stdin. Framing only:
decoding and validating the JSON is the dispatcher's (or client's) job.
"""

import asyncio
import json
import logging
import sys
from typing import Any, AsyncIterator, Dict, Optional

logger = logging.getLogger(__name__)

# Upper bound for a single protocol line; longer lines are dropped whole
DEFAULT_LINE_LIMIT = 8 * 1024 * 1024


class StdioTransport:
    """
    Line framing on top of an asyncio StreamReader and a byte writer.

    The writer may be an asyncio StreamWriter (write + drain) or a plain
    binary file such as sys.stdout.buffer (write + flush).
    """

    def __init__(self, reader: asyncio.StreamReader, writer: Any):
        self.reader = reader
        self.writer = writer
        self._write_lock = asyncio.Lock()
        self.closed = False

    @classmethod
    async def from_process_stdio(cls, limit: int = DEFAULT_LINE_LIMIT) -> "StdioTransport":
        """Transport bound to this process's stdin/stdout."""
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=limit)
        protocol = asyncio.StreamReaderProtocol(reader)
        await loop.connect_read_pipe(lambda: protocol, sys.stdin)
        return cls(reader, sys.stdout.buffer)

    async def read_line(self) -> Optional[str]:
        """
        Next complete line without its terminator, or None at end of stream.

        A line that exceeds the reader's limit is consumed up to its newline,
        logged and skipped.
        """
        discarding = False
        while True:
            try:
                raw = await self.reader.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                if discarding or not e.partial:
                    return None
                raw = e.partial
            except asyncio.LimitOverrunError as e:
                if not discarding:
                    logger.warning(f"Discarding oversized protocol line ({e.consumed}+ bytes)")
                discarding = True
                await self.reader.readexactly(e.consumed)
                continue

            if discarding:
                # Tail of the oversized line
                discarding = False
                continue
            return raw.decode("utf-8", errors="replace").rstrip("\r\n")

    async def lines(self) -> AsyncIterator[str]:
        """Iterate over incoming lines until the stream closes."""
        while True:
            line = await self.read_line()
            if line is None:
                self.closed = True
                return
            yield line

    async def send(self, message: Dict[str, Any]) -> None:
        """Serialize one message as a single line and flush it."""
        data = (json.dumps(message, ensure_ascii=False) + "\n").encode("utf-8")
        async with self._write_lock:
            self.writer.write(data)
            drain = getattr(self.writer, "drain", None)
            if drain is not None:
                await drain()
            else:
                self.writer.flush()

    def close(self) -> None:
        self.closed = True
        close = getattr(self.writer, "close", None)
        if close is not None and self.writer is not sys.stdout.buffer:
            close()
