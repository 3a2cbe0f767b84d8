"""
Authentication utilities for MCP server.

Provides helpers for extracting bearer tokens from requests and for reading
the bridged access token bound to the current tool call.
"""

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

from fastmcp.server.auth import AccessToken
from starlette.requests import HTTPConnection

from auth.models import BridgedTokenProps
from auth.verifier import props_from_access_token

logger = logging.getLogger(__name__)

AUTH_REQUIRED_MESSAGE = (
    "Microsoft 365 authentication required. Please ensure you have completed "
    "the OAuth flow and have a valid access token."
)

_current_access_token: ContextVar[Optional[AccessToken]] = ContextVar(
    "bridged_access_token", default=None
)


def get_bearer_token(connection: HTTPConnection) -> Optional[str]:
    """Extract the bearer token from a request or WebSocket connection.

    Reads the Authorization header. WebSocket clients that cannot set headers
    may pass the token as the `access_token` query parameter instead.

    Args:
        connection: Starlette Request or WebSocket

    Returns:
        Token string (without "Bearer " prefix), or None if absent or malformed
    """
    auth_header = connection.headers.get("Authorization")
    if auth_header:
        parts = auth_header.split()
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1]
        logger.debug("Ignoring malformed Authorization header")
        return None

    if connection.scope.get("type") == "websocket":
        return connection.query_params.get("access_token") or None

    return None


@contextmanager
def bind_access_token(access_token: Optional[AccessToken]) -> Iterator[None]:
    """Bind a verified access token to the current task for one tool call."""
    reset_token = _current_access_token.set(access_token)
    try:
        yield
    finally:
        _current_access_token.reset(reset_token)


def get_current_props() -> Optional[BridgedTokenProps]:
    """Bridged props of the current tool call, if authenticated."""
    return props_from_access_token(_current_access_token.get())


def get_upstream_access_token() -> str:
    """Upstream Microsoft access token for the current tool call.

    Raises:
        ValueError: If the call is not authenticated
    """
    props = get_current_props()
    if props is None or not props.upstream_access_token:
        raise ValueError(AUTH_REQUIRED_MESSAGE)
    return props.upstream_access_token


def get_user_id_safe(default: Optional[str] = None) -> Optional[str]:
    """Downstream user id of the current tool call, or default if not authenticated."""
    access_token = _current_access_token.get()
    if access_token is None:
        return default
    return (access_token.claims or {}).get("sub") or default
