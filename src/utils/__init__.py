"""
Utilities module for the Microsoft 365 MCP Server.
"""

from .auth_utils import (
    bind_access_token,
    get_bearer_token,
    get_current_props,
    get_upstream_access_token,
    get_user_id_safe,
)
from .date_utils import calendar_window, get_current_timestamp, to_graph_datetime
from .formatters import format_error_response, format_json, format_success_response

__all__ = [
    "bind_access_token",
    "get_bearer_token",
    "get_current_props",
    "get_upstream_access_token",
    "get_user_id_safe",
    "calendar_window",
    "get_current_timestamp",
    "to_graph_datetime",
    "format_error_response",
    "format_json",
    "format_success_response",
]
