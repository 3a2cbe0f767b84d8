"""
JSON-RPC message handling shared by the POST, SSE and WebSocket transports.

Handshake methods are served without a bridged access token so that clients
can discover tools before signing in. Every other method requires one and
answers -32001 with the authorization URL otherwise.
"""

import json
import logging
from typing import Any, NamedTuple, Optional

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from fastmcp.server.auth import AccessToken
from pydantic import ValidationError

from config.settings import MCPServerConfig, get_mcp_config
from core.exceptions import (
    AuthenticationRequiredError,
    InvalidJsonRpcRequestError,
    InvalidParamsError,
    JsonRpcError,
    JsonRpcParseError,
    MethodNotFoundError,
)
from utils.auth_utils import bind_access_token

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"
DEFAULT_PROTOCOL_VERSION = "2024-11-05"
SUPPORTED_PROTOCOL_VERSIONS = ("2024-11-05", "2025-03-26", "2025-06-18")

HANDSHAKE_METHODS = frozenset(
    {
        "initialize",
        "initialized",
        "tools/list",
        "resources/list",
        "prompts/list",
        "notifications/initialized",
        "notifications/cancelled",
    }
)
NOTIFICATION_METHODS = frozenset(
    {"initialized", "notifications/initialized", "notifications/cancelled"}
)
# Answered without authentication in addition to the handshake
LIVENESS_METHODS = frozenset({"ping"})


class JsonRpcReply(NamedTuple):
    """A response object (None for notifications) and its HTTP status."""

    status_code: int
    body: Optional[dict[str, Any]]


def parse_message(raw: bytes | str) -> Any:
    """Decode a JSON-RPC payload.

    Raises:
        JsonRpcParseError: If the payload is not valid JSON
    """
    try:
        return json.loads(raw)
    except (ValueError, UnicodeDecodeError) as e:
        raise JsonRpcParseError("Parse error", data={"details": str(e)}) from e


def requires_authentication(message: Any) -> bool:
    """Whether answering this message needs a bridged access token.

    Handshake and liveness methods never do, and neither do malformed
    messages, which are rejected before any method runs.
    """
    if not isinstance(message, dict):
        return False
    method = message.get("method")
    if not method or not isinstance(method, str):
        return False
    return method not in HANDSHAKE_METHODS and method not in LIVENESS_METHODS


def result_reply(message_id: Any, result: dict[str, Any]) -> JsonRpcReply:
    return JsonRpcReply(200, {"jsonrpc": JSONRPC_VERSION, "id": message_id, "result": result})


def error_reply(message_id: Any, error: JsonRpcError) -> JsonRpcReply:
    return JsonRpcReply(
        error.status_code,
        {"jsonrpc": JSONRPC_VERSION, "id": message_id, "error": error.to_error()},
    )


class JsonRpcHandler:
    """Dispatches JSON-RPC methods against the FastMCP tool registry."""

    def __init__(self, mcp: FastMCP, config: Optional[MCPServerConfig] = None) -> None:
        self.mcp = mcp
        self.config = config or get_mcp_config()

    # ------------------------------------------------------------------
    # Method results
    # ------------------------------------------------------------------

    def initialize_result(self, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        requested = (params or {}).get("protocolVersion")
        version = (
            requested if requested in SUPPORTED_PROTOCOL_VERSIONS else DEFAULT_PROTOCOL_VERSION
        )
        result = {
            "protocolVersion": version,
            "capabilities": {"tools": {}, "resources": {}, "prompts": {}, "logging": {}},
            "serverInfo": {
                "name": self.config.server_name,
                "version": self.config.server_version,
            },
        }
        if self.mcp.instructions:
            result["instructions"] = self.mcp.instructions
        return result

    async def tools_list_result(self) -> dict[str, Any]:
        tools = await self.mcp.get_tools()
        return {
            "tools": [
                tool.to_mcp_tool(name=key).model_dump(
                    by_alias=True, exclude_none=True, mode="json"
                )
                for key, tool in tools.items()
            ]
        }

    async def tools_call_result(
        self, params: dict[str, Any], access_token: AccessToken
    ) -> dict[str, Any]:
        name = params.get("name")
        arguments = params.get("arguments") or {}
        if not isinstance(name, str) or not isinstance(arguments, dict):
            raise InvalidParamsError("tools/call requires a tool name and an arguments object")

        tools = await self.mcp.get_tools()
        tool = tools.get(name)
        if tool is None:
            raise InvalidParamsError(f"Unknown tool: {name}")

        logger.info("Calling tool", extra={"tool": name, "client_id": access_token.client_id})
        try:
            with bind_access_token(access_token):
                result = await tool.run(arguments)
        except ToolError as e:
            return self._tool_error(str(e))
        except ValidationError as e:
            return self._tool_error(f"Invalid arguments for {name}: {e}")
        except Exception as e:
            logger.exception(f"Tool {name} failed")
            return self._tool_error(f"Error calling tool {name}: {e}")

        body: dict[str, Any] = {
            "content": [
                block.model_dump(by_alias=True, exclude_none=True, mode="json")
                for block in result.content
            ],
            "isError": False,
        }
        if result.structured_content is not None:
            body["structuredContent"] = result.structured_content
        return body

    @staticmethod
    def _tool_error(message: str) -> dict[str, Any]:
        return {"content": [{"type": "text", "text": message}], "isError": True}

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def handle(
        self,
        message: Any,
        access_token: Optional[AccessToken],
        auth_url: str,
    ) -> JsonRpcReply:
        """Handle one decoded JSON-RPC message.

        Args:
            message: Decoded JSON payload
            access_token: Verified bridged token, or None if unauthenticated
            auth_url: Authorization URL reported in -32001 errors

        Returns:
            Reply with HTTP status and body (body is None for notifications)
        """
        if not isinstance(message, dict):
            return error_reply(
                None, InvalidJsonRpcRequestError("Invalid request - expected a JSON object")
            )

        message_id = message.get("id")
        method = message.get("method")
        if not method or not isinstance(method, str):
            return error_reply(
                message_id, InvalidJsonRpcRequestError("Invalid request - missing method")
            )

        params = message.get("params") or {}
        if not isinstance(params, dict):
            return error_reply(message_id, InvalidParamsError("params must be an object"))

        try:
            if method in HANDSHAKE_METHODS:
                logger.debug(f"JSON-RPC handshake: {method}")
                return await self._handshake(method, message_id, params)

            if method in LIVENESS_METHODS:
                return result_reply(message_id, {})

            if access_token is None:
                logger.info(
                    "JSON-RPC method requires authentication", extra={"method": method}
                )
                raise AuthenticationRequiredError(auth_url)

            if method == "tools/call":
                return result_reply(
                    message_id, await self.tools_call_result(params, access_token)
                )

            raise MethodNotFoundError("Method not supported in direct mode")

        except JsonRpcError as e:
            return error_reply(message_id, e)

    async def _handshake(
        self, method: str, message_id: Any, params: dict[str, Any]
    ) -> JsonRpcReply:
        if method in NOTIFICATION_METHODS:
            return JsonRpcReply(202, None)
        if method == "initialize":
            return result_reply(message_id, self.initialize_result(params))
        if method == "tools/list":
            return result_reply(message_id, await self.tools_list_result())
        # resources/list -> {"resources": []}, prompts/list -> {"prompts": []}
        return result_reply(message_id, {method.split("/")[0]: []})
