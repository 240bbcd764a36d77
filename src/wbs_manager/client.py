"""
Caller-side MCP client with request/response correlation.

Requests are tagged with increasing integer ids and parked in a pending map
until the matching response arrives. Every request has a timeout; when it
fires the pending entry is removed, so a late response is logged and dropped.
When the server stream closes, every pending request fails with
ConnectionClosedError.
"""

import asyncio
import itertools
import json
import logging
import re
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from . import __version__
from .dispatcher import LATEST_PROTOCOL_VERSION
from .exceptions import ConnectionClosedError, RemoteError, RequestTimeoutError
from .tools import FAILURE_MARK, SUCCESS_MARK
from .transport import DEFAULT_LINE_LIMIT, StdioTransport

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 10.0
CONFLICT_MARKER = "modified by another user"
_ID_PATTERN = re.compile(r"ID:\s*(\S+)")


@dataclass
class ToolResult:
    """
    Normalized tools/call outcome.

    status is one of "json" (the text was a JSON document), "success",
    "error", "conflict" or "unknown".
    """

    status: str
    text: str
    payload: Any = None
    entity_id: Optional[str] = None
    is_error: bool = False

    @property
    def ok(self) -> bool:
        return self.status in ("json", "success") and not self.is_error


def _trailing_json(text: str) -> Any:
    block = text.rsplit("\n\n", 1)[-1].strip()
    if not block.startswith(("{", "[")):
        return None
    try:
        return json.loads(block)
    except json.JSONDecodeError:
        return None


def classify_tool_text(text: str) -> ToolResult:
    """
    Classify tool output text.

    JSON documents are returned parsed. Otherwise the leading mark decides:
    success text may carry an "ID: <id>" line and a trailing JSON block, and
    a failure is a conflict when its message carries the conflict marker.
    Marks inside a success payload are not looked at.
    """
    stripped = text.strip()
    if stripped.startswith(("{", "[")):
        try:
            return ToolResult("json", text, payload=json.loads(stripped))
        except json.JSONDecodeError:
            pass

    if stripped.startswith(FAILURE_MARK):
        status = "conflict" if CONFLICT_MARKER in stripped else "error"
        return ToolResult(status, text, is_error=True)
    if stripped.startswith(SUCCESS_MARK):
        match = _ID_PATTERN.search(text)
        return ToolResult(
            "success",
            text,
            payload=_trailing_json(text),
            entity_id=match.group(1) if match else None,
        )
    return ToolResult("unknown", text)


def default_server_command(data_dir: Optional[str] = None) -> List[str]:
    """Command line that starts a server with the current interpreter."""
    command = [sys.executable, "-m", "wbs_manager.cli"]
    if data_dir:
        command += ["--data-dir", data_dir]
    return command + ["serve"]


class MCPClient:
    """
    Correlating JSON-RPC client for a WBS server reached through a transport.

    Use `spawn()` to start a server child process, or pass any connected
    transport (tests use in-memory streams).
    """

    def __init__(self, transport: StdioTransport, request_timeout: float = DEFAULT_REQUEST_TIMEOUT):
        self.transport = transport
        self.request_timeout = request_timeout
        self.process: Optional[asyncio.subprocess.Process] = None
        self.server_info: Dict[str, Any] = {}
        self._pending: Dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._reader_task: Optional[asyncio.Task] = None
        self._closed = False

    @classmethod
    async def spawn(cls, command: Optional[Sequence[str]] = None, env: Optional[Dict[str, str]] = None,
                    request_timeout: float = DEFAULT_REQUEST_TIMEOUT) -> "MCPClient":
        """
        Start a server process and connect to its stdio.

        The child's stderr is inherited so its logs stay visible.
        """
        command = list(command or default_server_command())
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            env=env,
            limit=DEFAULT_LINE_LIMIT,
        )
        logger.info(f"Spawned WBS server (pid {process.pid}): {' '.join(command)}")
        client = cls(StdioTransport(process.stdout, process.stdin), request_timeout=request_timeout)
        client.process = process
        client.start()
        return client

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Start the background task that reads responses."""
        if self._reader_task is None:
            self._reader_task = asyncio.get_running_loop().create_task(self._read_loop())

    async def _read_loop(self) -> None:
        try:
            async for line in self.transport.lines():
                self._handle_line(line)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Response reader failed")
        finally:
            self._closed = True
            self._fail_pending(ConnectionClosedError("Server connection closed"))

    def _handle_line(self, line: str) -> None:
        if not line.strip():
            return
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            logger.warning(f"Ignoring non-JSON line from server: {line[:200]}")
            return
        if not isinstance(message, dict) or "method" in message:
            logger.debug(f"Ignoring server-initiated message: {line[:200]}")
            return

        request_id = message.get("id")
        future = self._pending.pop(request_id, None)
        if future is None:
            logger.warning(f"Dropping response for unknown or expired request id {request_id}")
            return
        if future.done():
            return

        error = message.get("error")
        if error is not None:
            future.set_exception(RemoteError(error.get("code", 0), error.get("message", ""), error.get("data")))
        else:
            future.set_result(message.get("result"))

    def _fail_pending(self, error: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)
        if pending:
            logger.warning(f"Failed {len(pending)} pending requests: {error}")

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None,
                      timeout: Optional[float] = None) -> Any:
        """
        Send a request and wait for its result.

        Raises:
            RequestTimeoutError: No response within the timeout
            ConnectionClosedError: The server stream closed first
            RemoteError: The server answered with a JSON-RPC error
        """
        if self._closed:
            raise ConnectionClosedError("Server connection closed")

        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        message = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params

        try:
            await self.transport.send(message)
        except (BrokenPipeError, ConnectionResetError) as e:
            self._pending.pop(request_id, None)
            raise ConnectionClosedError(f"Cannot send {method}: {e}") from e

        timeout = self.request_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            self._pending.pop(request_id, None)
            logger.warning(f"Request timeout: {method} (id {request_id})")
            raise RequestTimeoutError(method, timeout) from None

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        message = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self.transport.send(message)

    async def initialize(self, client_name: str = "wbs-client",
                         protocol_version: str = LATEST_PROTOCOL_VERSION) -> Dict[str, Any]:
        """Run the handshake and send notifications/initialized."""
        result = await self.request("initialize", {
            "protocolVersion": protocol_version,
            "capabilities": {},
            "clientInfo": {"name": client_name, "version": __version__},
        })
        self.server_info = result or {}
        await self.notify("notifications/initialized")
        return self.server_info

    async def list_tools(self) -> List[Dict[str, Any]]:
        result = await self.request("tools/list")
        return result.get("tools", [])

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> ToolResult:
        result = await self.request("tools/call", {"name": name, "arguments": arguments or {}})
        body = result if isinstance(result, dict) else {}
        content = body.get("content") or [{}]
        first = content[0] if isinstance(content[0], dict) else {}
        outcome = classify_tool_text(first.get("text") or "")
        outcome.is_error = bool(body.get("isError", outcome.is_error))
        return outcome

    # Convenience wrappers for the common task operations

    async def create_task(self, title: str, **fields: Any) -> ToolResult:
        return await self.call_tool("createTask", {"title": title, **fields})

    async def get_task(self, task_id: str) -> ToolResult:
        return await self.call_tool("getTask", {"taskId": task_id})

    async def update_task(self, task_id: str, if_version: Optional[int] = None, **fields: Any) -> ToolResult:
        arguments = {"taskId": task_id, **fields}
        if if_version is not None:
            arguments["ifVersion"] = if_version
        return await self.call_tool("updateTask", arguments)

    async def move_task(self, task_id: str, new_parent_id: Optional[str] = None,
                        if_version: Optional[int] = None) -> ToolResult:
        arguments: Dict[str, Any] = {"taskId": task_id}
        if new_parent_id is not None:
            arguments["newParentId"] = new_parent_id
        if if_version is not None:
            arguments["ifVersion"] = if_version
        return await self.call_tool("moveTask", arguments)

    async def list_tasks(self, parent_id: Optional[str] = None) -> ToolResult:
        return await self.call_tool("listTasks", {"parentId": parent_id} if parent_id else {})

    async def delete_task(self, task_id: str) -> ToolResult:
        return await self.call_tool("deleteTask", {"taskId": task_id})

    async def close(self) -> None:
        """Stop reading, close the server's stdin and reap a spawned process."""
        self._closed = True
        self._fail_pending(ConnectionClosedError("Client closed"))
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self.transport.close()
        if self.process is not None:
            try:
                await asyncio.wait_for(self.process.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning(f"WBS server (pid {self.process.pid}) did not exit; terminating")
                self.process.terminate()
                await self.process.wait()

    async def __aenter__(self) -> "MCPClient":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
