"""
Unified MCP endpoint.

One ASGI application serves the MCP path for every transport:
- WebSocket upgrades (including proxied ones that lost the Upgrade header)
- GET with Accept: text/event-stream (SSE)
- POST JSON-RPC with the unauthenticated handshake allowlist
"""

import logging
import uuid
from typing import Optional

from fastmcp.server.auth import AccessToken, TokenVerifier
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.types import Receive, Scope, Send
from starlette.websockets import WebSocket

from config.settings import MCPServerConfig, get_mcp_config, get_public_base_url
from core.exceptions import AuthenticationRequiredError, JsonRpcError
from transport.detection import Protocol, classify
from transport.jsonrpc import (
    JsonRpcHandler,
    error_reply,
    parse_message,
    requires_authentication,
)
from transport.sse import sse_response
from transport.websocket import SESSION_HEADER, WebSocketSession
from utils.auth_utils import get_bearer_token

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Accept, Authorization",
}

INVALID_GET_MESSAGE = (
    "GET requests must include Accept: text/event-stream for SSE or provide WebSocket headers"
)
UNSUPPORTED_METHOD_MESSAGE = (
    "Unsupported method - Use GET (SSE), POST (JSON-RPC), or WebSocket upgrade"
)


class ProtocolDispatcher:
    """ASGI app routing one path to the WebSocket, SSE or JSON-RPC handler."""

    def __init__(
        self,
        handler: JsonRpcHandler,
        verifier: TokenVerifier,
        config: Optional[MCPServerConfig] = None,
    ) -> None:
        self.handler = handler
        self.verifier = verifier
        self.config = config or get_mcp_config()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "websocket":
            websocket = WebSocket(scope, receive=receive, send=send)
            session = WebSocketSession(
                websocket,
                self.handler,
                self.verifier,
                auth_url=self.auth_url(websocket),
                idle_timeout_seconds=self.config.websocket_idle_timeout_seconds,
            )
            logger.info(
                "WebSocket upgrade accepted", extra={"session_id": session.session_id}
            )
            await session.run()
            return

        request = Request(scope, receive=receive)
        response = await self.dispatch(request)
        await response(scope, receive, send)

    def auth_url(self, connection) -> str:
        return f"{get_public_base_url(connection, self.config)}/authorize"

    async def dispatch(self, request: Request) -> Response:
        protocol = classify(request.method, request.headers)
        logger.info(
            "MCP request",
            extra={"method": request.method, "protocol": protocol.value, "path": request.url.path},
        )

        if protocol is Protocol.WEBSOCKET:
            # Upgrade signals arrived as a plain HTTP request; the server
            # never saw a handshake it could complete.
            return PlainTextResponse(
                "WebSocket upgrade required",
                status_code=426,
                headers={
                    "Upgrade": "websocket",
                    "Connection": "Upgrade",
                    SESSION_HEADER: uuid.uuid4().hex,
                    **CORS_HEADERS,
                },
            )
        if protocol is Protocol.PREFLIGHT:
            return Response(status_code=204, headers=CORS_HEADERS)
        if protocol is Protocol.SSE:
            logger.info("SSE MCP connection requested")
            return sse_response(self.handler, headers=CORS_HEADERS)
        if protocol is Protocol.INVALID_GET:
            return PlainTextResponse(INVALID_GET_MESSAGE, status_code=400, headers=CORS_HEADERS)
        if protocol is Protocol.JSON_RPC:
            return await self.handle_json_rpc(request)
        return PlainTextResponse(
            UNSUPPORTED_METHOD_MESSAGE,
            status_code=405,
            headers={"Allow": "GET, POST, OPTIONS", **CORS_HEADERS},
        )

    async def authenticate(self, request: Request) -> Optional[AccessToken]:
        token = get_bearer_token(request)
        if not token:
            return None
        return await self.verifier.verify_token(token)

    async def handle_json_rpc(self, request: Request) -> Response:
        body = await request.body()
        try:
            message = parse_message(body)
        except JsonRpcError as e:
            logger.warning("Rejecting unparseable JSON-RPC body")
            reply = error_reply(None, e)
            return JSONResponse(reply.body, status_code=reply.status_code, headers=CORS_HEADERS)

        # Handshake methods are answered without looking at the bearer token
        access_token = (
            await self.authenticate(request) if requires_authentication(message) else None
        )
        auth_url = self.auth_url(request)
        reply = await self.handler.handle(message, access_token, auth_url)

        if reply.body is None:
            return Response(status_code=202, headers=CORS_HEADERS)

        headers = dict(CORS_HEADERS)
        error = reply.body.get("error")
        if error and error.get("code") == AuthenticationRequiredError.code:
            headers["WWW-Authenticate"] = (
                f'Bearer realm="{self.config.server_name}", '
                f'error="invalid_token", authorization_uri="{auth_url}"'
            )
        return JSONResponse(reply.body, status_code=reply.status_code, headers=headers)
