"""
Protocol classification for the unified MCP endpoint.

Order matters: WebSocket signals win over everything else, because proxies
may strip the `Upgrade` header while leaving the handshake headers intact,
and such a request often also looks like a plain GET.
"""

from enum import Enum
from typing import Mapping


class Protocol(str, Enum):
    """Transport selected for one inbound request."""

    WEBSOCKET = "websocket"
    PREFLIGHT = "preflight"
    SSE = "sse"
    INVALID_GET = "invalid_get"
    JSON_RPC = "json_rpc"
    UNSUPPORTED = "unsupported"


def has_websocket_signals(headers: Mapping[str, str]) -> bool:
    """True for `Upgrade: websocket` or a Sec-WebSocket-Key/Version pair."""
    if headers.get("upgrade", "").lower() == "websocket":
        return True
    return bool(headers.get("sec-websocket-key") and headers.get("sec-websocket-version"))


def wants_event_stream(headers: Mapping[str, str]) -> bool:
    return "text/event-stream" in headers.get("accept", "")


def classify(method: str, headers: Mapping[str, str]) -> Protocol:
    """Classify an HTTP request.

    Args:
        method: HTTP method
        headers: Request headers (case-insensitive mapping, e.g. Starlette Headers)
    """
    if has_websocket_signals(headers):
        return Protocol.WEBSOCKET
    method = method.upper()
    if method == "OPTIONS":
        return Protocol.PREFLIGHT
    if method == "GET":
        return Protocol.SSE if wants_event_stream(headers) else Protocol.INVALID_GET
    if method == "POST":
        return Protocol.JSON_RPC
    return Protocol.UNSUPPORTED
