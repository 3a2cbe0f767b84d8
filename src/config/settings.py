"""
Configuration settings for the Microsoft 365 MCP Server.

This module provides the configuration for the OAuth bridge, including:
- Upstream identity provider (Microsoft Entra ID) settings
- Secrets protecting the approval cookie, the authorization state and stored props
- Static client alias settings for tools that cannot register dynamically
- Stream lifetimes for the unified MCP endpoint
"""

from typing import Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict
from starlette.requests import HTTPConnection

DEFAULT_UPSTREAM_SCOPES = (
    "User.Read Mail.Read Mail.ReadWrite Mail.Send Calendars.Read "
    "Calendars.ReadWrite Contacts.ReadWrite OnlineMeetings.ReadWrite "
    "ChannelMessage.Send Team.ReadBasic.All offline_access"
)

# Well-known client id hardcoded by mcp-remote style tooling
DEFAULT_STATIC_CLIENT_ID = "rWJu8WV42zC5pfGT"


class MCPServerConfig(BaseSettings):
    """Microsoft 365 MCP Server configuration.

    Settings are grouped as:
    - Server settings (host, port, debug, public URL)
    - Upstream identity provider settings (tenant, client, credential)
    - Bridge secrets (cookie signing, state signing, props encryption)
    - Token and stream lifetimes
    - Token Store backend
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore extra environment variables
        populate_by_name=True,
    )

    # Server settings
    host: str = Field(default="0.0.0.0", description="Host to bind to")
    port: int = Field(default=9000, description="Port to bind to")
    debug: bool = Field(default=False, description="Enable debug mode")
    server_name: str = Field(
        default="microsoft-365-mcp", description="Server name reported to clients"
    )
    server_version: str = Field(default="0.3.0", description="Server version")
    public_base_url: Optional[str] = Field(
        default=None,
        description="Public origin of this server. Falls back to the request origin.",
    )

    # Upstream identity provider (Microsoft Entra ID)
    tenant_id: Optional[str] = Field(default=None, description="Azure AD tenant ID")
    client_id: Optional[str] = Field(
        default=None, description="Application (client) ID registered in Entra ID"
    )
    client_secret: Optional[SecretStr] = Field(
        default=None,
        description="Client secret used for code exchange and refresh with Entra ID",
    )
    federated_credential_oid: Optional[str] = Field(
        default=None,
        alias="FEDERATED_CREDENTIAL_OID",
        description="Client ID of the user-assigned managed identity used as a secretless client assertion.",
    )
    authority_host: str = Field(
        default="https://login.microsoftonline.com",
        description="Entra ID authority host",
    )
    upstream_scopes: str = Field(
        default=DEFAULT_UPSTREAM_SCOPES,
        description="Space-separated scopes requested from the identity provider",
    )

    # Microsoft Graph
    graph_api_version: str = Field(default="v1.0", description="Graph API version")
    graph_base_url: str = Field(
        default="https://graph.microsoft.com", description="Graph API host"
    )
    graph_cache_ttl_seconds: int = Field(
        default=300, description="TTL of cached read-only Graph responses"
    )

    # Bridge secrets
    cookie_secret: Optional[SecretStr] = Field(
        default=None, description="HMAC key for the approval cookie"
    )
    state_secret: Optional[SecretStr] = Field(
        default=None, description="Signing key for the upstream state parameter"
    )
    encryption_key: Optional[SecretStr] = Field(
        default=None, description="Fernet key protecting token props at rest"
    )

    # Static client alias
    static_client_id: str = Field(
        default=DEFAULT_STATIC_CLIENT_ID,
        description="Well-known client id used by tools that cannot register",
    )
    static_client_name: str = Field(
        default="Microsoft 365 MCP Static Client",
        description="Client name used when bootstrapping the static client",
    )

    # Lifetimes
    state_ttl_seconds: int = Field(default=600)
    authorization_code_ttl_seconds: int = Field(default=600)
    access_token_ttl_seconds: int = Field(
        default=3600, description="Used when the upstream omits expires_in"
    )
    refresh_token_ttl_seconds: int = Field(default=30 * 24 * 60 * 60)
    approval_cookie_max_age_seconds: int = Field(default=365 * 24 * 60 * 60)

    # Unified MCP endpoint
    mcp_path: str = Field(default="/sse", description="Unified MCP endpoint path")
    sse_keepalive_seconds: float = Field(default=30.0)
    sse_idle_timeout_seconds: float = Field(default=300.0)
    websocket_idle_timeout_seconds: float = Field(default=300.0)

    # Token Store
    store_backend: str = Field(
        default="memory", description="Token Store backend: memory or disk"
    )
    store_directory: str = Field(
        default=".mcp-store", description="Directory used by the disk backend"
    )

    @property
    def upstream_authorize_url(self) -> str:
        return f"{self.authority_host}/{self.tenant_id}/oauth2/v2.0/authorize"

    @property
    def upstream_token_url(self) -> str:
        return f"{self.authority_host}/{self.tenant_id}/oauth2/v2.0/token"

    @property
    def graph_root(self) -> str:
        return f"{self.graph_base_url}/{self.graph_api_version}"


# Global configuration instance - lazy initialized
_mcp_config: MCPServerConfig | None = None


def get_mcp_config(config: MCPServerConfig | None = None) -> MCPServerConfig:
    """Get the global MCP server configuration with optional injection.

    Args:
        config: Optional config instance to inject (useful for testing).
                If provided, sets this as the global config.

    Returns:
        The global MCPServerConfig instance.
    """
    global _mcp_config
    if config is not None:
        _mcp_config = config
    if _mcp_config is None:
        _mcp_config = MCPServerConfig()
    return _mcp_config


def reset_config() -> None:
    """Reset the config singleton for testing."""
    global _mcp_config
    _mcp_config = None


def get_public_base_url(
    request: Optional[HTTPConnection] = None, config: Optional[MCPServerConfig] = None
) -> str:
    """Get the origin used for every URL this server hands out.

    Prefers the configured PUBLIC_BASE_URL. Otherwise the request's own
    origin is used, so metadata served behind a proxy or tunnel points back
    at the address the client actually reached.

    Args:
        request: The current request or WebSocket connection, if any.
        config: Optional config instance. If None, uses global config.

    Returns:
        Origin without a trailing slash.
    """
    config = config or get_mcp_config()

    if config.public_base_url:
        return config.public_base_url.rstrip("/")

    if request is not None:
        scheme = {"ws": "http", "wss": "https"}.get(request.url.scheme, request.url.scheme)
        return f"{scheme}://{request.url.netloc}"

    host = "localhost" if config.host in ("127.0.0.1", "0.0.0.0") else config.host
    scheme = "http" if host == "localhost" else "https"
    if (scheme == "https" and config.port == 443) or (
        scheme == "http" and config.port == 80
    ):
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{config.port}"
