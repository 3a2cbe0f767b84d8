"""
WebSocket transport.

Each upgrade gets its own session id and a single receive loop. JSON-RPC
messages are answered through the shared handler. The bearer token presented
at upgrade is verified once, when the first method that needs it arrives.
"""

import asyncio
import json
import logging
import uuid
from typing import Optional

from fastmcp.server.auth import AccessToken, TokenVerifier
from starlette.websockets import WebSocket, WebSocketDisconnect

from core.exceptions import JsonRpcError, JsonRpcParseError
from transport.jsonrpc import (
    JsonRpcHandler,
    JsonRpcReply,
    error_reply,
    parse_message,
    requires_authentication,
)
from utils.auth_utils import get_bearer_token

logger = logging.getLogger(__name__)

SESSION_HEADER = "X-WebSocket-Session"
MCP_SUBPROTOCOL = "mcp"


class WebSocketSession:
    """One isolated MCP session over a WebSocket connection."""

    def __init__(
        self,
        websocket: WebSocket,
        handler: JsonRpcHandler,
        verifier: TokenVerifier,
        auth_url: str,
        idle_timeout_seconds: float,
    ) -> None:
        self.websocket = websocket
        self.handler = handler
        self.verifier = verifier
        self.auth_url = auth_url
        self.idle_timeout_seconds = idle_timeout_seconds
        self.session_id = uuid.uuid4().hex
        self.access_token: Optional[AccessToken] = None
        self._bearer: Optional[str] = None

    async def accept(self) -> None:
        requested = self.websocket.scope.get("subprotocols") or []
        subprotocol = MCP_SUBPROTOCOL if MCP_SUBPROTOCOL in requested else None
        self._bearer = get_bearer_token(self.websocket)

        await self.websocket.accept(
            subprotocol=subprotocol,
            headers=[(SESSION_HEADER.lower().encode(), self.session_id.encode())],
        )
        logger.info(
            "WebSocket session opened",
            extra={"session_id": self.session_id, "has_bearer": self._bearer is not None},
        )

    async def resolve_access_token(self) -> Optional[AccessToken]:
        """Verify the connection's bearer token the first time a method needs it."""
        if self.access_token is None and self._bearer:
            self.access_token = await self.verifier.verify_token(self._bearer)
        return self.access_token

    async def run(self) -> None:
        """Accept the connection and serve messages until disconnect or idle timeout."""
        await self.accept()
        while True:
            try:
                frame = await asyncio.wait_for(
                    self.websocket.receive(), timeout=self.idle_timeout_seconds
                )
            except asyncio.TimeoutError:
                logger.info(
                    "WebSocket session idle timeout",
                    extra={"session_id": self.session_id},
                )
                await self.websocket.close(code=1000)
                return

            if frame["type"] == "websocket.disconnect":
                logger.info("WebSocket session closed", extra={"session_id": self.session_id})
                return

            text = frame.get("text")
            if text is None:
                reply = error_reply(
                    None,
                    JsonRpcParseError(
                        "Parse error", data={"details": "Binary frames are not supported"}
                    ),
                )
            else:
                reply = await self._handle_text(text)

            if reply.body is not None:
                try:
                    await self.websocket.send_text(json.dumps(reply.body))
                except WebSocketDisconnect:
                    logger.info(
                        "WebSocket session closed", extra={"session_id": self.session_id}
                    )
                    return

    async def _handle_text(self, raw: str) -> JsonRpcReply:
        try:
            message = parse_message(raw)
        except JsonRpcError as e:
            return error_reply(None, e)

        access_token = (
            await self.resolve_access_token() if requires_authentication(message) else None
        )
        return await self.handler.handle(message, access_token, self.auth_url)
