"""
Microsoft 365 MCP Server - MCP tools for Microsoft Graph behind an OAuth 2.1 bridge.

This module assembles the ASGI application:
- Downstream OAuth 2.1 server (/register, /token) with the static client alias
- Authorization bridge to Microsoft sign-in (/authorize, /callback)
- Unified MCP endpoint (WebSocket, SSE and JSON-RPC on one path)
- RFC 8414 / RFC 9728 metadata, health and info endpoints

Usage:
    # Run with the in-memory token store
    python server.py

    # Persist bridge state on disk
    python server.py --store disk

    # Run with debug logging
    python server.py --debug
"""

import argparse
import base64
import logging
from typing import Any, Optional
from urllib.parse import unquote

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route, WebSocketRoute

from auth.bridge import AuthorizationBridge
from auth.client_resolver import ClientIdentityResolver
from auth.provider import (
    SUPPORTED_AUTH_METHODS,
    SUPPORTED_GRANT_TYPES,
    SUPPORTED_PKCE_METHODS,
    SUPPORTED_RESPONSE_TYPES,
    OAuthProvider,
)
from auth.signing import ApprovalCookie, PropsCipher, StateSigner
from auth.token_exchange import TokenLifecycleCallback
from auth.upstream import UpstreamTokenExchanger
from auth.verifier import BridgedTokenVerifier
from config.settings import MCPServerConfig, get_mcp_config, get_public_base_url
from core.exceptions import (
    ConfigurationError,
    DependencyError,
    InvalidRequestError,
    OAuthError,
)
from core.factory import MCPToolBase, MCPToolFactory
from services.calendar_service import CalendarService
from services.contacts_service import ContactsService
from services.general_service import GeneralService
from services.graph_client import GraphClient
from services.mail_service import MailService
from services.teams_service import TeamsService
from storage.token_store import TokenStore, create_key_value_backend
from transport.dispatcher import CORS_HEADERS, ProtocolDispatcher
from transport.jsonrpc import JsonRpcHandler

logger = logging.getLogger(__name__)

METADATA_HEADERS = {
    "Cache-Control": "public, max-age=3600",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET",
    "Access-Control-Allow-Headers": "Content-Type",
}
NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}
DOWNSTREAM_SCOPES = ["claudeai"]


# =============================================================================
# Service Registration
# =============================================================================


def get_default_services(
    graph: GraphClient, config: Optional[MCPServerConfig] = None
) -> list[MCPToolBase]:
    """Return default service instances, all sharing one Graph client.

    Args:
        graph: Graph client used by every tool.
        config: Optional config instance passed to services that need it.

    Returns:
        One service per tool domain.
    """
    return [
        GeneralService(graph, config=config),
        MailService(graph),
        CalendarService(graph),
        TeamsService(graph),
        ContactsService(graph),
    ]


def create_factory(services: list[MCPToolBase]) -> MCPToolFactory:
    """Create factory with services.

    Args:
        services: Services to register.

    Returns:
        Configured MCPToolFactory instance.
    """
    factory = MCPToolFactory()
    for service in services:
        factory.register_service(service)
    return factory


# =============================================================================
# OAuth Metadata Builders
# =============================================================================


def build_authorization_server_metadata(base_url: str) -> dict[str, Any]:
    """Build OAuth 2.0 Authorization Server Metadata (RFC 8414).

    Every endpoint lives under this server's own origin; the Microsoft
    endpoints are never exposed to MCP clients.

    Args:
        base_url: Public origin of this server.

    Returns:
        Dictionary containing authorization server metadata.
    """
    return {
        "issuer": base_url,
        "authorization_endpoint": f"{base_url}/authorize",
        "token_endpoint": f"{base_url}/token",
        "registration_endpoint": f"{base_url}/register",
        "grant_types_supported": list(SUPPORTED_GRANT_TYPES),
        "response_types_supported": list(SUPPORTED_RESPONSE_TYPES),
        "code_challenge_methods_supported": list(SUPPORTED_PKCE_METHODS),
        "token_endpoint_auth_methods_supported": list(SUPPORTED_AUTH_METHODS),
        "scopes_supported": DOWNSTREAM_SCOPES,
    }


def build_protected_resource_metadata(
    base_url: str, config: MCPServerConfig
) -> dict[str, Any]:
    """Build OAuth 2.0 Protected Resource Metadata (RFC 9728).

    Args:
        base_url: Public origin of this server.
        config: The MCP server configuration.

    Returns:
        Dictionary containing protected resource metadata.
    """
    return {
        "resource": f"{base_url}{config.mcp_path}",
        "authorization_servers": [base_url],
        "bearer_methods_supported": ["header"],
        "scopes_supported": DOWNSTREAM_SCOPES,
        "resource_name": "Microsoft 365 MCP Server",
    }


# =============================================================================
# Endpoint Handlers
# =============================================================================


def parse_basic_auth(header: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """Decode `Authorization: Basic` client credentials (RFC 6749 section 2.3.1)."""
    if not header:
        return None, None
    parts = header.split()
    if len(parts) != 2 or parts[0].lower() != "basic":
        return None, None
    try:
        decoded = base64.b64decode(parts[1]).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return None, None
    client_id, sep, client_secret = decoded.partition(":")
    if not sep:
        return None, None
    return unquote(client_id), unquote(client_secret)


class OAuthEndpoints:
    """Token, registration and metadata endpoints."""

    def __init__(
        self,
        provider: OAuthProvider,
        resolver: ClientIdentityResolver,
        factory: MCPToolFactory,
        config: MCPServerConfig,
    ) -> None:
        self.provider = provider
        self.resolver = resolver
        self.factory = factory
        self.config = config

    async def token(self, request: Request) -> Response:
        """OAuth token endpoint with static client id mapping."""
        try:
            form = dict(await request.form())
            basic_id, basic_secret = parse_basic_auth(request.headers.get("Authorization"))

            requested_id = form.get("client_id") or basic_id
            if not requested_id:
                logger.info("Token request missing client_id, using static MCP client id")
                requested_id = self.config.static_client_id

            client_id = await self.resolver.resolve(requested_id, bootstrap=False)
            if client_id != requested_id:
                logger.info(
                    "Mapped token client id",
                    extra={"requested_client_id": requested_id, "client_id": client_id},
                )
            form["client_id"] = client_id

            client = await self.provider.authenticate_client(
                client_id, form.get("client_secret") or basic_secret
            )
            body = await self.provider.exchange_token(client, form)
        except OAuthError as e:
            logger.info(
                "Token request rejected",
                extra={"error": e.error_code, "description": e.description},
            )
            return e.to_response()
        except Exception as e:
            logger.exception("Token exchange error")
            return JSONResponse(
                {"error": "server_error", "error_description": str(e) or "Token exchange failed"},
                status_code=500,
                headers=NO_STORE_HEADERS,
            )

        logger.info(
            "Token issued",
            extra={"client_id": client.client_id, "grant_type": form.get("grant_type")},
        )
        return JSONResponse(body, headers=NO_STORE_HEADERS)

    async def register(self, request: Request) -> Response:
        """Dynamic client registration (RFC 7591)."""
        try:
            try:
                metadata = await request.json()
            except ValueError as e:
                raise InvalidRequestError("Registration body must be JSON") from e
            if not isinstance(metadata, dict):
                raise InvalidRequestError("Registration body must be a JSON object")
            client = await self.provider.register_client(metadata)
        except OAuthError as e:
            return e.to_response()
        return JSONResponse(
            client.registration_response(), status_code=201, headers=NO_STORE_HEADERS
        )

    async def authorization_server_metadata(self, request: Request) -> JSONResponse:
        """OAuth 2.0 Authorization Server Metadata endpoint (RFC 8414)."""
        base_url = get_public_base_url(request, self.config)
        logger.info("Served Authorization Server Metadata", extra={"issuer": base_url})
        return JSONResponse(
            build_authorization_server_metadata(base_url), headers=METADATA_HEADERS
        )

    async def protected_resource_metadata(self, request: Request) -> JSONResponse:
        """OAuth 2.0 Protected Resource Metadata endpoint (RFC 9728)."""
        base_url = get_public_base_url(request, self.config)
        return JSONResponse(
            build_protected_resource_metadata(base_url, self.config),
            headers=METADATA_HEADERS,
        )

    async def health(self, request: Request) -> JSONResponse:
        """Simple health check endpoint for container orchestration."""
        return JSONResponse(
            {
                "status": "healthy",
                "service": "Microsoft 365 MCP Server - Unified Endpoint",
                "protocols": {
                    "GET": "SSE with Accept: text/event-stream",
                    "POST": "Direct JSON-RPC",
                    "WebSocket": "Full MCP protocol with OAuth",
                },
                "endpoints": {
                    "mcp-server": f"{self.config.mcp_path} (all protocols)",
                    "health": "/health",
                    "authorization": "/authorize",
                },
            }
        )

    async def info(self, request: Request) -> JSONResponse:
        base_url = get_public_base_url(request, self.config)
        endpoint = f"{base_url}{self.config.mcp_path}"
        summary = self.factory.get_tool_summary()
        return JSONResponse(
            {
                "service": "Microsoft 365 MCP Server",
                "version": self.config.server_version,
                "architecture": "Unified Endpoint",
                "configurations": {
                    "claude_desktop_direct": {
                        "url": endpoint,
                        "description": "Direct web connector",
                    },
                    "mcp_remote": {
                        "command": "npx",
                        "args": ["mcp-remote", endpoint],
                        "description": "Traditional MCP-remote configuration",
                    },
                },
                "tools": summary["total_tools"],
                "note": (
                    "Both configurations use the same unified endpoint with "
                    "automatic protocol detection"
                ),
            },
            headers=CORS_HEADERS,
        )

    def routes(self) -> list[Route]:
        return [
            Route("/health", self.health, methods=["GET"], name="health_check"),
            Route("/", self.info, methods=["GET"], name="info_root"),
            Route("/info", self.info, methods=["GET"], name="info"),
            Route("/token", self.token, methods=["POST"], name="token"),
            Route("/register", self.register, methods=["POST"], name="register"),
            Route(
                "/.well-known/oauth-authorization-server",
                self.authorization_server_metadata,
                methods=["GET"],
                name="oauth_authorization_server_metadata",
            ),
            Route(
                "/.well-known/oauth-protected-resource",
                self.protected_resource_metadata,
                methods=["GET"],
                name="oauth_protected_resource_metadata",
            ),
            Route(
                f"/.well-known/oauth-protected-resource{self.config.mcp_path}",
                self.protected_resource_metadata,
                methods=["GET"],
                name="oauth_protected_resource_metadata_mcp",
            ),
        ]


# =============================================================================
# Server Initialization
# =============================================================================


def configure_logging(config: MCPServerConfig) -> None:
    """Configure root logging based on the debug setting."""
    log_level = logging.DEBUG if config.debug else logging.INFO
    logging.basicConfig(level=log_level)
    logging.getLogger().setLevel(log_level)


def validate_auth_config(config: MCPServerConfig) -> None:
    """Validate the bridge configuration.

    Args:
        config: The MCP server configuration.

    Raises:
        ConfigurationError: If required values are missing.
    """
    missing = []
    if not config.tenant_id:
        missing.append("TENANT_ID")
    if not config.client_id:
        missing.append("CLIENT_ID")

    # Either CLIENT_SECRET or FEDERATED_CREDENTIAL_OID
    has_client_secret = config.client_secret and config.client_secret.get_secret_value()
    has_federated_credential = bool(config.federated_credential_oid)
    if not has_client_secret and not has_federated_credential:
        missing.append("CLIENT_SECRET or FEDERATED_CREDENTIAL_OID")

    for name, secret in (
        ("COOKIE_SECRET", config.cookie_secret),
        ("STATE_SECRET", config.state_secret),
        ("ENCRYPTION_KEY", config.encryption_key),
    ):
        if not secret or not secret.get_secret_value():
            missing.append(name)

    if missing:
        logger.error(
            "Required config missing", extra={"missing_config": missing}
        )
        raise ConfigurationError(
            f"Missing required configuration: {', '.join(missing)}"
        )

    logger.info(
        "Auth config loaded",
        extra={
            "tenant_id": config.tenant_id,
            "client_id": config.client_id,
            "credential": "client_secret" if has_client_secret else "managed_identity",
        },
    )


def create_store(config: MCPServerConfig) -> TokenStore:
    """Create the Token Store for the configured backend."""
    backend = create_key_value_backend(config.store_backend, config.store_directory)
    logger.info("Token store created", extra={"backend": config.store_backend})
    return TokenStore(backend)


def create_app(
    config: Optional[MCPServerConfig] = None,
    services: Optional[list[MCPToolBase]] = None,
    store: Optional[TokenStore] = None,
    exchanger: Optional[UpstreamTokenExchanger] = None,
) -> Starlette:
    """Create and configure the ASGI application.

    Args:
        config: Optional config instance. If None, uses global config.
        services: Optional list of services. If None, uses defaults.
        store: Optional Token Store. If None, one is created from config.
        exchanger: Optional upstream token exchanger.

    Returns:
        Configured Starlette application.

    Raises:
        ConfigurationError: If configuration validation fails.
        DependencyError: If the configured store backend is unavailable.
    """
    config = config or get_mcp_config()
    validate_auth_config(config)

    store = store or create_store(config)
    cipher = PropsCipher(config.encryption_key.get_secret_value())
    exchanger = exchanger or UpstreamTokenExchanger(config)
    provider = OAuthProvider(
        store, cipher, token_callback=TokenLifecycleCallback(exchanger), config=config
    )
    resolver = ClientIdentityResolver(
        provider,
        store,
        well_known_id=config.static_client_id,
        client_name=config.static_client_name,
    )
    bridge = AuthorizationBridge(
        provider,
        resolver,
        StateSigner(config.state_secret.get_secret_value(), config.state_ttl_seconds),
        ApprovalCookie(config.cookie_secret.get_secret_value()),
        config,
    )

    graph = GraphClient(config, cache=store)
    factory = create_factory(services or get_default_services(graph, config))
    mcp = factory.create_mcp_server(name=config.server_name)

    verifier = BridgedTokenVerifier(provider, base_url=get_public_base_url(config=config))
    dispatcher = ProtocolDispatcher(JsonRpcHandler(mcp, config), verifier, config)
    endpoints = OAuthEndpoints(provider, resolver, factory, config)

    mcp_path = config.mcp_path.rstrip("/")
    routes = [
        *endpoints.routes(),
        *bridge.routes(),
        Route(mcp_path, dispatcher, name="mcp"),
        Route(f"{mcp_path}/{{rest:path}}", dispatcher, name="mcp_subpath"),
        WebSocketRoute(mcp_path, dispatcher, name="mcp_ws"),
        WebSocketRoute(f"{mcp_path}/{{rest:path}}", dispatcher, name="mcp_ws_subpath"),
    ]

    app = Starlette(debug=config.debug, routes=routes)
    app.state.config = config
    app.state.store = store
    app.state.provider = provider
    app.state.resolver = resolver
    app.state.factory = factory
    app.state.mcp = mcp

    logger.info(
        "Application created",
        extra={"mcp_path": mcp_path, "tools": factory.get_tool_summary()["total_tools"]},
    )
    return app


# =============================================================================
# Global Application Instance (Lazy Initialization via __getattr__)
# =============================================================================

_app: Optional[Starlette] = None


def __getattr__(name: str) -> Any:
    """Lazy creation of the module-level `app`.

    Lets `uvicorn server:app` import this module without building the
    application (and validating configuration) at import time.
    """
    global _app
    if name == "app":
        if _app is None:
            config = get_mcp_config()
            configure_logging(config)
            _app = create_app(config)
        return _app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


# =============================================================================
# Server Runtime
# =============================================================================


def log_server_info(factory: MCPToolFactory, config: MCPServerConfig) -> None:
    summary = factory.get_tool_summary()
    logger.info(
        "Server initialized",
        extra={
            "server_name": config.server_name,
            "total_services": summary["total_services"],
            "total_tools": summary["total_tools"],
            "store_backend": config.store_backend,
        },
    )
    for domain, info in summary["services"].items():
        logger.info(
            f"Service registered: {domain}",
            extra={"tool_count": info["tool_count"], "class_name": info["class_name"]},
        )


# =============================================================================
# CLI Entry Point
# =============================================================================


def main() -> None:
    """Main entry point with argument parsing."""
    global _app

    parser = argparse.ArgumentParser(description="Microsoft 365 MCP Server")
    parser.add_argument("--host", default=None, help="Host to bind to (default: from config)")
    parser.add_argument(
        "--port", "-p", type=int, default=None, help="Port to bind to (default: from config)"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument(
        "--store",
        choices=["memory", "disk"],
        default=None,
        help="Token store backend (default: from config)",
    )

    args = parser.parse_args()

    # Build config overrides from CLI
    overrides: dict[str, Any] = {}
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    if args.debug:
        overrides["debug"] = True
    if args.store:
        overrides["store_backend"] = args.store

    base_config = get_mcp_config()
    config = base_config.model_copy(update=overrides) if overrides else base_config
    configure_logging(config)

    try:
        _app = create_app(config)
    except (ConfigurationError, DependencyError) as e:
        print(f"Failed to create server: {e}")
        return

    log_server_info(_app.state.factory, config)

    print("Starting Microsoft 365 MCP Server")
    print(f"MCP endpoint: {get_public_base_url(config=config)}{config.mcp_path}")
    print(f"Store: {config.store_backend}")
    print(f"Debug: {config.debug}")
    print("-" * 50)

    uvicorn.run(
        _app,
        host=config.host,
        port=config.port,
        log_level="debug" if config.debug else "info",
    )


if __name__ == "__main__":
    main()
