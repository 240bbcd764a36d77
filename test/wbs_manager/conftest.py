"""
Shared fixtures for the WBS MCP test suite.

Provides an isolated SQLite database per test, repository fixtures, and an
in-memory loopback that connects an MCPClient to a served WBSMCPServer
without spawning a process.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Tuple

import pytest

from wbs_manager.artifact_repository import ArtifactRepository
from wbs_manager.client import MCPClient
from wbs_manager.database import WBSDatabase
from wbs_manager.dependency_repository import DependencyRepository
from wbs_manager.mcp_server import create_mcp_server
from wbs_manager.task_repository import TaskRepository
from wbs_manager.transport import StdioTransport


class PipeWriter:
    """Writer end of an in-memory pipe: bytes written are fed to a StreamReader."""

    def __init__(self, reader: asyncio.StreamReader):
        self.reader = reader
        self.written: List[bytes] = []
        self.closed = False

    def write(self, data: bytes) -> None:
        self.written.append(data)
        self.reader.feed_data(data)

    async def drain(self) -> None:
        pass

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.reader.feed_eof()


class BufferWriter:
    """Synchronous binary sink with write/flush, like sys.stdout.buffer."""

    def __init__(self):
        self.chunks: List[bytes] = []
        self.flushes = 0

    def write(self, data: bytes) -> None:
        self.chunks.append(data)

    def flush(self) -> None:
        self.flushes += 1

    @property
    def lines(self) -> List[str]:
        return b"".join(self.chunks).decode("utf-8").splitlines()


def make_pipe() -> Tuple[asyncio.StreamReader, PipeWriter]:
    reader = asyncio.StreamReader()
    return reader, PipeWriter(reader)


@pytest.fixture
def database(tmp_path):
    """Fresh database file per test."""
    db = WBSDatabase(tmp_path / "data" / "wbs.db")
    yield db
    db.close()


@pytest.fixture
def task_repo(database):
    return TaskRepository(database)


@pytest.fixture
def artifact_repo(database):
    return ArtifactRepository(database)


@pytest.fixture
def dependency_repo(database):
    return DependencyRepository(database)


@pytest.fixture
def loopback(database):
    """
    Factory for a client connected to an in-process server.

    Usage inside an async test:

        async with loopback() as (client, server):
            ...
    """

    @asynccontextmanager
    async def connect(request_timeout: float = 5.0) -> AsyncIterator[Tuple[MCPClient, object]]:
        to_server_reader, to_server_writer = make_pipe()
        to_client_reader, to_client_writer = make_pipe()

        server = create_mcp_server(database)
        server_task = asyncio.create_task(
            server.serve(StdioTransport(to_server_reader, to_client_writer))
        )
        client = MCPClient(StdioTransport(to_client_reader, to_server_writer), request_timeout=request_timeout)
        client.start()
        try:
            yield client, server
        finally:
            await client.close()
            await asyncio.wait_for(server_task, timeout=5.0)

    return connect
