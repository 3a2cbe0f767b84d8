"""
Core module for MCP server components and factory patterns.
"""

from .exceptions import (
    AuthenticationRequiredError,
    ConfigurationError,
    DependencyError,
    GraphAPIError,
    JsonRpcError,
    MCPServerError,
    OAuthError,
    ServiceRegistrationError,
    TokenVerificationError,
    UpstreamExchangeError,
)
from .factory import Domain, MCPToolBase, MCPToolFactory

__all__ = [
    "Domain",
    "MCPToolBase",
    "MCPToolFactory",
    "MCPServerError",
    "ConfigurationError",
    "DependencyError",
    "TokenVerificationError",
    "ServiceRegistrationError",
    "OAuthError",
    "UpstreamExchangeError",
    "JsonRpcError",
    "AuthenticationRequiredError",
    "GraphAPIError",
]
