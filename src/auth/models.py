"""
Data models shared by the OAuth bridge.

- OAuthClientRecord: persisted downstream client registration
- AuthRequest: parsed downstream authorization request
- ClientType: closed classification of the downstream tool
- BridgedTokenProps: upstream credentials carried inside downstream grants
- UpstreamTokenResponse / TokenExchangeResult: token lifecycle values
"""

import time
from enum import Enum
from typing import Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field

LOOPBACK_HOSTS = ("localhost", "127.0.0.1", "[::1]", "::1")


class ClientType(str, Enum):
    """Downstream tool family, guessed once per authorization from the redirect URI."""

    CLAUDE_DESKTOP = "claude-desktop"
    MCP_REMOTE = "mcp-remote"
    UNKNOWN = "unknown"

    @classmethod
    def from_redirect_uri(cls, redirect_uri: Optional[str]) -> "ClientType":
        if not redirect_uri:
            return cls.UNKNOWN
        host = (urlparse(redirect_uri).hostname or "").lower()
        if host in ("claude.ai", "claude.com") or host.endswith(
            (".claude.ai", ".claude.com")
        ):
            return cls.CLAUDE_DESKTOP
        if host in LOOPBACK_HOSTS:
            return cls.MCP_REMOTE
        return cls.UNKNOWN


class OAuthClientRecord(BaseModel):
    """A registered downstream OAuth client.

    Immutable once created except for redirect URI additions.
    """

    client_id: str
    client_secret: Optional[str] = None
    client_name: str = "MCP Client"
    redirect_uris: list[str] = Field(default_factory=list)
    token_endpoint_auth_method: str = "none"
    grant_types: list[str] = Field(
        default_factory=lambda: ["authorization_code", "refresh_token"]
    )
    response_types: list[str] = Field(default_factory=lambda: ["code"])
    registered_at: int = Field(default_factory=lambda: int(time.time()))
    # Registered without redirect URIs: each new URI is added on first use
    adopts_redirect_uris: bool = False

    @property
    def is_public(self) -> bool:
        return self.token_endpoint_auth_method == "none"

    def registration_response(self) -> dict:
        """Client information response (RFC 7591 section 3.2.1)."""
        body = {
            "client_id": self.client_id,
            "client_name": self.client_name,
            "redirect_uris": self.redirect_uris,
            "grant_types": self.grant_types,
            "response_types": self.response_types,
            "token_endpoint_auth_method": self.token_endpoint_auth_method,
            "client_id_issued_at": self.registered_at,
        }
        if self.client_secret:
            body["client_secret"] = self.client_secret
            body["client_secret_expires_at"] = 0
        return body


class AuthRequest(BaseModel):
    """Downstream OAuth authorization request as received at /authorize."""

    response_type: str = "code"
    client_id: str
    redirect_uri: str
    scope: list[str] = Field(default_factory=list)
    state: str = ""
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    resource: Optional[str] = None


class BridgedTokenProps(BaseModel):
    """Upstream credentials bound to a downstream grant or access token.

    The access-token props hold the upstream access token; the refresh props
    hold only what is needed to refresh upstream.
    """

    upstream_authorization_code: Optional[str] = None
    upstream_redirect_uri: Optional[str] = None
    upstream_access_token: Optional[str] = None
    upstream_token_type: Optional[str] = None
    upstream_scope: Optional[str] = None
    upstream_refresh_token: Optional[str] = None
    client_type: ClientType = ClientType.UNKNOWN


class UpstreamTokenResponse(BaseModel):
    """Token endpoint response from the identity provider."""

    model_config = ConfigDict(extra="ignore")

    access_token: str
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    scope: str = ""


class TokenExchangeResult(BaseModel):
    """Outcome of the token lifecycle callback.

    Fields left as None keep the values the downstream server already has.
    """

    access_token_props: Optional[BridgedTokenProps] = None
    new_props: Optional[BridgedTokenProps] = None
    access_token_ttl: Optional[int] = None


class IssuedAccessToken(BaseModel):
    """A live downstream access token resolved from the Token Store."""

    client_id: str
    user_id: str
    grant_id: str
    scope: list[str] = Field(default_factory=list)
    expires_at: int
    props: BridgedTokenProps
