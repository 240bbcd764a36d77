"""
JSON-RPC request dispatcher for the WBS MCP server.

Turns one protocol line into at most one reply. The dispatcher owns the tool
registry and is the only place that maps tool names to handlers. It never
raises: protocol problems become JSON-RPC error objects, domain failures
become tool-level failure text, and unexpected exceptions are logged and
reported as internal errors.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as ArgumentValidationError

from . import __version__
from .database import WBSDatabase
from .tools import AVAILABLE_TOOLS, BaseTool, create_tool_instance, tool_result

logger = logging.getLogger(__name__)

SERVER_NAME = "wbs-mcp-server"
SUPPORTED_PROTOCOL_VERSIONS = ("2025-06-18", "2025-03-26", "2024-11-05")
LATEST_PROTOCOL_VERSION = SUPPORTED_PROTOCOL_VERSIONS[0]

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

SERVER_INSTRUCTIONS = (
    "This server manages a Work Breakdown Structure. Use listTasks/getTask to read the tree, "
    "createTask/updateTask/moveTask/deleteTask to edit it (pass ifVersion to avoid overwriting "
    "concurrent edits), createDependency to order work, and getNextTask/requestTaskCompletion "
    "to execute tasks one at a time."
)

RequestId = Optional[Union[int, str]]


@dataclass
class JsonRpcRequest:
    """JSON-RPC 2.0 request or notification."""

    method: str
    id: RequestId = None
    params: Dict[str, Any] = field(default_factory=dict)
    is_notification: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JsonRpcRequest":
        params = data.get("params")
        return cls(
            method=data["method"],
            id=data.get("id"),
            params=params if isinstance(params, dict) else {},
            is_notification="id" not in data,
        )


def json_rpc_response(id: RequestId, result: Any) -> Dict[str, Any]:
    """Create JSON-RPC success response."""
    return {"jsonrpc": "2.0", "id": id, "result": result}


def json_rpc_error(id: RequestId, code: int, message: str, data: Any = None) -> Dict[str, Any]:
    """Create JSON-RPC error response."""
    error: Dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": id, "error": error}


def negotiate_protocol_version(requested: Any) -> str:
    """Echo a supported requested version, otherwise offer the newest one."""
    if requested in SUPPORTED_PROTOCOL_VERSIONS:
        return requested
    return LATEST_PROTOCOL_VERSION


def _summarize_validation_error(error: ArgumentValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "arguments"
        problems.append(f"{location}: {item.get('msg')}")
    return "; ".join(problems)


class Dispatcher:
    """
    Routes JSON-RPC messages to handlers.

    Handles initialize, notifications/initialized, ping, tools/list,
    tools/call, resources/list and prompts/list.
    """

    def __init__(self, database: WBSDatabase):
        self.db = database
        self.tools: Dict[str, BaseTool] = {
            name: create_tool_instance(name, database) for name in AVAILABLE_TOOLS
        }
        self.initialized = False
        self.client_ready = False
        self.protocol_version: Optional[str] = None
        self.client_info: Dict[str, Any] = {}

    def tool_definitions(self) -> List[Dict[str, Any]]:
        return [tool.definition() for tool in self.tools.values()]

    async def handle_line(self, line: str) -> Optional[Dict[str, Any]]:
        """
        Process one raw protocol line.

        Args:
            line: One newline-delimited JSON-RPC message, without the newline

        Returns:
            Reply to write back, or None for notifications and blank lines
        """
        raw = line.strip()
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except (ValueError, RecursionError) as e:
            # JSONDecodeError, oversized integer literals and pathological nesting
            logger.warning(f"Discarding malformed JSON-RPC line ({type(e).__name__}: {e}): {raw[:200]}")
            return json_rpc_error(None, PARSE_ERROR, "Parse error")
        return await self.handle_message(data)

    async def handle_message(self, data: Any) -> Optional[Dict[str, Any]]:
        """Process one decoded JSON-RPC message."""
        if not isinstance(data, dict) or not isinstance(data.get("method"), str):
            request_id = data.get("id") if isinstance(data, dict) else None
            if isinstance(data, dict) and "method" not in data and ("result" in data or "error" in data):
                logger.warning(f"Ignoring unexpected JSON-RPC response with id {request_id}")
                return None
            logger.warning(f"Invalid JSON-RPC request: {str(data)[:200]}")
            return json_rpc_error(request_id, INVALID_REQUEST, "Invalid Request")

        request = JsonRpcRequest.from_dict(data)
        try:
            reply = await self.handle_request(request)
        except Exception:
            logger.exception(f"Unhandled error while processing '{request.method}'")
            reply = json_rpc_error(request.id, INTERNAL_ERROR, "Internal error")

        if request.is_notification:
            if reply is not None and "error" in reply:
                logger.warning(f"Notification '{request.method}' failed: {reply['error']['message']}")
            return None
        return reply

    async def handle_request(self, request: JsonRpcRequest) -> Optional[Dict[str, Any]]:
        method = request.method
        params = request.params

        if method == "initialize":
            return self._handle_initialize(request.id, params)

        if method == "notifications/initialized":
            self.client_ready = True
            logger.info("Client acknowledged initialization")
            return None

        if method.startswith("notifications/"):
            logger.debug(f"Ignoring notification {method}")
            return None

        if method == "ping":
            return json_rpc_response(request.id, {})

        if method == "tools/list":
            return json_rpc_response(request.id, {"tools": self.tool_definitions()})

        if method == "tools/call":
            return await self._handle_tools_call(request.id, params)

        if method == "resources/list":
            return json_rpc_response(request.id, {"resources": []})

        if method == "prompts/list":
            return json_rpc_response(request.id, {"prompts": []})

        return json_rpc_error(request.id, METHOD_NOT_FOUND, f"Method not found: {method}")

    def _handle_initialize(self, id: RequestId, params: Dict[str, Any]) -> Dict[str, Any]:
        if self.initialized:
            return json_rpc_error(id, INVALID_REQUEST, "Server already initialized")

        self.initialized = True
        self.protocol_version = negotiate_protocol_version(params.get("protocolVersion"))
        client_info = params.get("clientInfo")
        self.client_info = client_info if isinstance(client_info, dict) else {}
        logger.info(
            f"Initialized for client {self.client_info.get('name', 'unknown')} "
            f"(protocol {self.protocol_version})"
        )
        return json_rpc_response(
            id,
            {
                "protocolVersion": self.protocol_version,
                "capabilities": {
                    "tools": {"listChanged": False},
                    "resources": {},
                    "prompts": {},
                },
                "serverInfo": {"name": SERVER_NAME, "version": __version__},
                "instructions": SERVER_INSTRUCTIONS,
            },
        )

    async def _handle_tools_call(self, id: RequestId, params: Dict[str, Any]) -> Dict[str, Any]:
        tool_name = params.get("name")
        tool = self.tools.get(tool_name) if isinstance(tool_name, str) else None
        if tool is None:
            return json_rpc_error(id, METHOD_NOT_FOUND, f"Unknown tool: {tool_name}")

        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            return json_rpc_error(id, INVALID_PARAMS, "arguments must be an object")

        try:
            args = tool.args_model.model_validate(arguments)
        except ArgumentValidationError as e:
            summary = _summarize_validation_error(e)
            logger.info(f"{tool_name}: invalid arguments: {summary}")
            return json_rpc_response(
                id, tool_result(tool._format_error_response(f"Invalid arguments for {tool_name}: {summary}"))
            )

        text = await tool.run_safely(args)
        return json_rpc_response(id, tool_result(text))
