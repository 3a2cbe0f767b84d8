"""
Transport layer for the unified MCP endpoint.

Exports:
- ProtocolDispatcher: ASGI app serving WebSocket, SSE and JSON-RPC on one path
- JsonRpcHandler: Method dispatch shared by all transports
- classify / Protocol: Request classification
"""

from transport.detection import Protocol, classify, has_websocket_signals
from transport.dispatcher import CORS_HEADERS, ProtocolDispatcher
from transport.jsonrpc import HANDSHAKE_METHODS, JsonRpcHandler, JsonRpcReply

__all__ = [
    "CORS_HEADERS",
    "HANDSHAKE_METHODS",
    "JsonRpcHandler",
    "JsonRpcReply",
    "Protocol",
    "ProtocolDispatcher",
    "classify",
    "has_websocket_signals",
]
