"""
WBS MCP Server

Wires the store, dispatcher and stdio transport together and owns the
server lifecycle. Lines are processed one at a time on a single asyncio task,
so replies go out in the order requests arrived.

Key Features:
- Server wrapper with dependency injection of the WBSDatabase
- Stdio transport (newline-delimited JSON-RPC on stdin/stdout)
- Lifecycle management with an async context manager
- Server metadata for diagnostics
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from . import __version__
from .database import WBSDatabase
from .dispatcher import (
    INTERNAL_ERROR,
    SERVER_INSTRUCTIONS,
    SUPPORTED_PROTOCOL_VERSIONS,
    Dispatcher,
    json_rpc_error,
)
from .transport import StdioTransport

logger = logging.getLogger(__name__)


class WBSMCPServer:
    """
    MCP server wrapper with lifecycle management.

    The dispatcher is created lazily so a server object can be built (and
    inspected) before anything is served.
    """

    def __init__(
        self,
        database: WBSDatabase,
        server_name: str = "WBS MCP Server",
        server_version: str = __version__,
    ):
        """
        Initialize MCP server with its database.

        Args:
            database: WBSDatabase instance for data operations
            server_name: Name identifier for the MCP server
            server_version: Version string for server identification
        """
        self.database = database
        self.server_name = server_name
        self.server_version = server_version
        self.dispatcher: Optional[Dispatcher] = None
        self.requests_handled = 0

    def _create_dispatcher(self) -> Dispatcher:
        dispatcher = Dispatcher(self.database)
        logger.info(f"Registered {len(dispatcher.tools)} tools for '{self.server_name}'")
        return dispatcher

    async def serve(self, transport: StdioTransport) -> None:
        """
        Process lines from the transport until it closes.

        Args:
            transport: Connected transport; replies are written back to it
        """
        if not self.dispatcher:
            self.dispatcher = self._create_dispatcher()

        async for line in transport.lines():
            self.requests_handled += 1
            try:
                reply = await self.dispatcher.handle_line(line)
            except Exception:
                logger.exception(f"Unhandled error while processing line: {line[:200]}")
                reply = json_rpc_error(None, INTERNAL_ERROR, "Internal error")
            if reply is None:
                continue
            try:
                await transport.send(reply)
            except (BrokenPipeError, ConnectionResetError) as e:
                logger.warning(f"Client went away while sending a reply: {e}")
                return

        logger.info(f"Input stream closed after {self.requests_handled} messages")

    async def start_server(self, transport: str = "stdio") -> None:
        """
        Start serving on the given transport.

        Only stdio is supported; the server is meant to be spawned by its
        client as a child process.
        """
        if transport.lower() != "stdio":
            raise ValueError(f"Unsupported transport mode: {transport}. Supported: stdio")

        try:
            stdio = await StdioTransport.from_process_stdio()
        except (OSError, ValueError) as e:
            logger.error(f"Failed to attach to stdio: {e}")
            raise RuntimeError(f"MCP server startup failed: {e}") from e

        async with self.lifecycle_manager():
            logger.info(f"Starting '{self.server_name}' with {transport} transport")
            await self.serve(stdio)

    @asynccontextmanager
    async def lifecycle_manager(self) -> AsyncIterator[Dispatcher]:
        """
        Async context manager for server startup and cleanup.

        Yields the dispatcher; always logs the end of the lifecycle.
        """
        try:
            if not self.dispatcher:
                self.dispatcher = self._create_dispatcher()
            logger.info(f"MCP server lifecycle started for '{self.server_name}'")
            yield self.dispatcher
        except Exception as e:
            logger.error(f"MCP server lifecycle error: {e}")
            raise
        finally:
            logger.info(f"MCP server lifecycle ended for '{self.server_name}'")

    def get_server_info(self) -> Dict[str, Any]:
        """
        Get server configuration and status information.

        Returns:
            Dictionary with server information and status
        """
        dispatcher = self.dispatcher or Dispatcher(self.database)
        return {
            "name": self.server_name,
            "version": self.server_version,
            "instructions": SERVER_INSTRUCTIONS,
            "protocol_versions": list(SUPPORTED_PROTOCOL_VERSIONS),
            "registered_tools": list(dispatcher.tools),
            "database": str(self.database.db_path),
            "server_created": self.dispatcher is not None,
            "requests_handled": self.requests_handled,
        }


def create_mcp_server(
    database: WBSDatabase,
    server_name: str = "WBS MCP Server",
    server_version: str = __version__,
) -> WBSMCPServer:
    """
    Factory function to create a configured WBSMCPServer instance.

    Args:
        database: WBSDatabase instance for data operations
        server_name: Name identifier for the MCP server
        server_version: Version string for server identification

    Returns:
        Configured WBSMCPServer ready for startup
    """
    return WBSMCPServer(
        database=database,
        server_name=server_name,
        server_version=server_version,
    )


def run_stdio_server(database: WBSDatabase) -> None:
    """Blocking entry point used by the CLI."""
    server = create_mcp_server(database)
    asyncio.run(server.start_server("stdio"))
