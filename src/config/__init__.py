"""
Configuration module for the Microsoft 365 MCP Server.
"""

from .settings import (
    MCPServerConfig,
    get_mcp_config,
    get_public_base_url,
    reset_config,
)

__all__ = [
    "MCPServerConfig",
    "get_mcp_config",
    "reset_config",
    "get_public_base_url",
]
