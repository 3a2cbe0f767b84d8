"""
Custom exception hierarchy for the MCP server.

Provides explicit failure modes instead of silent failures and generic exceptions.
OAuth and JSON-RPC errors carry their wire representation so route handlers
can convert them to responses in one place.
"""

from typing import Any, Optional

from starlette.responses import JSONResponse


class MCPServerError(Exception):
    """
    Base exception for all MCP server errors.

    All custom exceptions in the MCP server should inherit from this class
    to allow catching all MCP-related errors with a single except clause.
    """

    pass


class ConfigurationError(MCPServerError):
    """
    Configuration validation failed.

    Raised when required configuration values are missing or invalid.
    Examples:
    - Missing TENANT_ID or CLIENT_ID
    - Neither CLIENT_SECRET nor FEDERATED_CREDENTIAL_OID configured
    - Missing COOKIE_SECRET, STATE_SECRET or ENCRYPTION_KEY
    """

    pass


class DependencyError(MCPServerError):
    """
    Required dependency is not available.

    Raised when a required package or module is not installed.
    Examples:
    - Disk Token Store requested without the diskcache extra
    """

    pass


class TokenVerificationError(MCPServerError):
    """
    Token verification failed.

    Raised when a signed value (state, cookie, stored props) cannot be verified.
    Note: For security reasons, specific details may not be exposed.
    """

    pass


class ServiceRegistrationError(MCPServerError):
    """
    Service registration failed.

    Raised when a service cannot be registered with the factory.
    Examples:
    - Duplicate service domain
    """

    pass


# =============================================================================
# OAuth errors (RFC 6749 section 5.2 shaped)
# =============================================================================


class OAuthError(MCPServerError):
    """Base class for errors returned to OAuth clients as JSON."""

    error_code: str = "server_error"
    status_code: int = 500

    def __init__(self, description: str = "") -> None:
        super().__init__(description or self.error_code)
        self.description = description

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.error_code}
        if self.description:
            body["error_description"] = self.description
        return body

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            self.to_dict(),
            status_code=self.status_code,
            headers={"Cache-Control": "no-store"},
        )


class InvalidRequestError(OAuthError):
    """Missing or malformed required parameter."""

    error_code = "invalid_request"
    status_code = 400


class InvalidClientError(OAuthError):
    """Unknown client or failed client authentication."""

    error_code = "invalid_client"
    status_code = 401


class InvalidGrantError(OAuthError):
    """Authorization code or refresh token is invalid, expired or already used."""

    error_code = "invalid_grant"
    status_code = 400


class UnsupportedGrantTypeError(OAuthError):
    error_code = "unsupported_grant_type"
    status_code = 400


class UnsupportedResponseTypeError(OAuthError):
    error_code = "unsupported_response_type"
    status_code = 400


class InvalidStateError(OAuthError):
    """
    The correlation state between /authorize and /callback is unusable.

    Raised when the state cannot be decoded, its signature does not verify,
    it has expired, or it does not carry a client id.
    """

    error_code = "invalid_state"
    status_code = 400


class MissingCodeError(OAuthError):
    """The identity provider redirected back without an authorization code."""

    error_code = "missing_code"
    status_code = 400


class RegistrationError(OAuthError):
    """
    Dynamic or static client registration failed.

    Surfaced to callers as a terminal server_error.
    """

    error_code = "server_error"
    status_code = 500


class UpstreamExchangeError(MCPServerError):
    """
    The identity provider token endpoint rejected or failed a call.

    Never retried: a consumed authorization code cannot be redeemed twice and
    a failed refresh must not be repeated blindly. The token endpoint surfaces
    it as invalid_grant.
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.error = error


# =============================================================================
# JSON-RPC errors
# =============================================================================


class JsonRpcError(MCPServerError):
    """Base class for errors answered as JSON-RPC error objects."""

    code: int = -32603
    status_code: int = 500

    def __init__(
        self, message: str, data: Optional[dict[str, Any]] = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.data = data

    def to_error(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


class JsonRpcParseError(JsonRpcError):
    code = -32700
    status_code = 400


class InvalidJsonRpcRequestError(JsonRpcError):
    code = -32600
    status_code = 400


class MethodNotFoundError(JsonRpcError):
    code = -32601
    status_code = 404


class InvalidParamsError(JsonRpcError):
    code = -32602
    status_code = 400


class AuthenticationRequiredError(JsonRpcError):
    """
    A valid protocol request arrived without a bridged access token.

    Carries the authorization URL the caller should visit.
    """

    code = -32001
    status_code = 401

    def __init__(self, auth_url: str) -> None:
        super().__init__(
            "Authentication required",
            data={
                "error": "microsoft_oauth_required",
                "auth_url": auth_url,
                "instructions": [
                    "Microsoft 365 authentication is required to use tools.",
                    "Please visit the auth_url to complete OAuth authentication.",
                    "After authentication, tools will be available for use.",
                ],
            },
        )
        self.auth_url = auth_url


# =============================================================================
# Resource errors
# =============================================================================


class GraphAPIError(MCPServerError):
    """
    Microsoft Graph returned a non-success response.

    The message carries the Graph error message, e.g.
    "Microsoft Graph API error: 404 - The specified object was not found in the store."
    """

    def __init__(self, status: int, message: str) -> None:
        super().__init__(f"Microsoft Graph API error: {status} - {message}")
        self.status = status
        self.graph_message = message
