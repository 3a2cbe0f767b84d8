"""
Downstream OAuth 2.1 authorization server.

Implements the server role this bridge plays toward MCP clients:
- Dynamic client registration (RFC 7591)
- Authorization request validation with PKCE (RFC 7636)
- Authorization code and refresh token grants with refresh token rotation
- Bearer token resolution to the bridged upstream props

Every credential handed to a client is opaque and stored only as a SHA-256
hash. Props holding upstream tokens are Fernet-encrypted at rest.
"""

import base64
import hashlib
import hmac
import logging
import secrets
import time
import uuid
from typing import Any, Awaitable, Callable, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from auth.models import (
    AuthRequest,
    BridgedTokenProps,
    IssuedAccessToken,
    OAuthClientRecord,
    TokenExchangeResult,
)
from auth.signing import PropsCipher, hash_secret
from config.settings import MCPServerConfig, get_mcp_config
from core.exceptions import (
    InvalidClientError,
    InvalidGrantError,
    InvalidRequestError,
    MCPServerError,
    UnsupportedGrantTypeError,
    UnsupportedResponseTypeError,
)
from storage.token_store import TokenStore

logger = logging.getLogger(__name__)

TokenCallback = Callable[[str, BridgedTokenProps], Awaitable[TokenExchangeResult]]

SUPPORTED_GRANT_TYPES = ("authorization_code", "refresh_token")
SUPPORTED_RESPONSE_TYPES = ("code",)
SUPPORTED_AUTH_METHODS = ("none", "client_secret_post", "client_secret_basic")
SUPPORTED_PKCE_METHODS = ("S256",)


def _is_absolute_uri(uri: Any) -> bool:
    if not isinstance(uri, str):
        return False
    parsed = urlparse(uri)
    return bool(parsed.scheme and (parsed.netloc or parsed.scheme not in ("http", "https")))


def append_query(url: str, params: dict[str, str]) -> str:
    parsed = urlparse(url)
    query = parse_qsl(parsed.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v)
    return urlunparse(parsed._replace(query=urlencode(query)))


def _verify_pkce(verifier: str, challenge: str) -> bool:
    """S256 code challenge check (RFC 7636 section 4.6)."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    expected = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return hmac.compare_digest(expected, challenge)


def _new_token(user_id: str, grant_id: str) -> str:
    return f"{user_id}:{grant_id}:{secrets.token_urlsafe(32)}"


class OAuthProvider:
    """OAuth 2.1 server backed by the Token Store."""

    def __init__(
        self,
        store: TokenStore,
        cipher: PropsCipher,
        token_callback: Optional[TokenCallback] = None,
        config: Optional[MCPServerConfig] = None,
    ) -> None:
        self.store = store
        self.cipher = cipher
        self.token_callback = token_callback
        self.config = config or get_mcp_config()

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    async def register_client(self, metadata: Mapping[str, Any]) -> OAuthClientRecord:
        """Register a client from RFC 7591 metadata.

        Returns the record with its plaintext secret, if any. Only the
        secret's hash is persisted.

        Raises:
            InvalidRequestError: If the metadata is malformed
        """
        redirect_uris = metadata.get("redirect_uris") or []
        if not isinstance(redirect_uris, list) or not all(
            _is_absolute_uri(uri) for uri in redirect_uris
        ):
            raise InvalidRequestError("redirect_uris must be a list of absolute URIs")

        auth_method = metadata.get("token_endpoint_auth_method") or "none"
        if auth_method not in SUPPORTED_AUTH_METHODS:
            raise InvalidRequestError(
                f"Unsupported token_endpoint_auth_method: {auth_method}"
            )

        grant_types = metadata.get("grant_types") or list(SUPPORTED_GRANT_TYPES)
        if not isinstance(grant_types, list) or not set(grant_types) <= set(
            SUPPORTED_GRANT_TYPES
        ):
            raise InvalidRequestError(f"Unsupported grant_types: {grant_types}")

        response_types = metadata.get("response_types") or list(SUPPORTED_RESPONSE_TYPES)
        if not isinstance(response_types, list) or not set(response_types) <= set(
            SUPPORTED_RESPONSE_TYPES
        ):
            raise InvalidRequestError(f"Unsupported response_types: {response_types}")

        client_secret = None
        if auth_method != "none":
            client_secret = secrets.token_urlsafe(32)

        client = OAuthClientRecord(
            client_id=secrets.token_urlsafe(12),
            client_secret=client_secret,
            client_name=str(metadata.get("client_name") or "MCP Client"),
            redirect_uris=redirect_uris,
            token_endpoint_auth_method=auth_method,
            grant_types=grant_types,
            response_types=response_types,
            adopts_redirect_uris=not redirect_uris,
        )

        stored = client
        if client_secret:
            stored = client.model_copy(update={"client_secret": hash_secret(client_secret)})
        await self.store.put_client(stored)

        logger.info(
            "Registered OAuth client",
            extra={
                "client_id": client.client_id,
                "client_name": client.client_name,
                "auth_method": auth_method,
                "redirect_uri_count": len(redirect_uris),
            },
        )
        return client

    async def lookup_client(self, client_id: str) -> Optional[OAuthClientRecord]:
        return await self.store.get_client(client_id)

    async def authenticate_client(
        self,
        client_id: Optional[str],
        client_secret: Optional[str] = None,
    ) -> OAuthClientRecord:
        """Resolve and authenticate the client calling the token endpoint.

        Raises:
            InvalidClientError: Unknown client or wrong secret
        """
        if not client_id:
            raise InvalidClientError("Missing client_id")
        client = await self.lookup_client(client_id)
        if client is None:
            raise InvalidClientError("Unknown client")
        if client.is_public:
            return client
        if not client_secret or not client.client_secret:
            raise InvalidClientError("Client authentication required")
        if not hmac.compare_digest(hash_secret(client_secret), client.client_secret):
            raise InvalidClientError("Client authentication failed")
        return client

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def parse_auth_request(self, params: Mapping[str, str]) -> AuthRequest:
        """Validate a downstream authorization request.

        A client registered without redirect URIs adopts each new redirect
        URI it authorizes with. The approval prompt shows that URI to the user.

        Raises:
            InvalidRequestError, InvalidClientError, UnsupportedResponseTypeError
        """
        client_id = params.get("client_id")
        if not client_id:
            raise InvalidRequestError("Missing client_id")

        response_type = params.get("response_type") or "code"
        if response_type not in SUPPORTED_RESPONSE_TYPES:
            raise UnsupportedResponseTypeError(
                f"Unsupported response_type: {response_type}"
            )

        client = await self.lookup_client(client_id)
        if client is None:
            raise InvalidClientError("Unknown client")

        redirect_uri = params.get("redirect_uri")
        if not redirect_uri:
            if len(client.redirect_uris) != 1:
                raise InvalidRequestError("Missing redirect_uri")
            redirect_uri = client.redirect_uris[0]
        elif redirect_uri not in client.redirect_uris:
            if not client.adopts_redirect_uris:
                raise InvalidRequestError("redirect_uri is not registered for this client")
            if not _is_absolute_uri(redirect_uri):
                raise InvalidRequestError("redirect_uri must be an absolute URI")
            client = client.model_copy(
                update={"redirect_uris": [*client.redirect_uris, redirect_uri]}
            )
            await self.store.put_client(client)
            logger.info(
                "Adopted redirect URI for client",
                extra={"client_id": client_id},
            )

        code_challenge = params.get("code_challenge") or None
        code_challenge_method = None
        if code_challenge:
            code_challenge_method = params.get("code_challenge_method")
            if code_challenge_method not in SUPPORTED_PKCE_METHODS:
                raise InvalidRequestError("code_challenge_method must be S256")

        return AuthRequest(
            response_type=response_type,
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=(params.get("scope") or "").split(),
            state=params.get("state") or "",
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            resource=params.get("resource") or None,
        )

    async def complete_authorization(
        self,
        request: AuthRequest,
        user_id: str,
        scope: list[str],
        props: BridgedTokenProps,
        metadata: Optional[dict[str, Any]] = None,
    ) -> str:
        """Create a grant and issue a single-use authorization code.

        Returns:
            The client redirect URL carrying `code` and `state`.
        """
        grant_id = uuid.uuid4().hex
        code = _new_token(user_id, grant_id)

        await self.store.put(
            f"grant:{grant_id}",
            {
                "id": grant_id,
                "client_id": request.client_id,
                "user_id": user_id,
                "scope": scope,
                "metadata": metadata or {},
                "encrypted_props": self.cipher.encrypt(props.model_dump(mode="json")),
                "created_at": int(time.time()),
                "refresh_token_id": None,
                "previous_refresh_token_id": None,
            },
            # Lives as long as its code until tokens are issued
            ttl=self.config.authorization_code_ttl_seconds,
        )
        await self.store.put(
            f"code:{hash_secret(code)}",
            {
                "grant_id": grant_id,
                "client_id": request.client_id,
                "redirect_uri": request.redirect_uri,
                "code_challenge": request.code_challenge,
                "code_challenge_method": request.code_challenge_method,
            },
            ttl=self.config.authorization_code_ttl_seconds,
        )

        logger.info(
            "Authorization completed",
            extra={
                "client_id": request.client_id,
                "grant_id": grant_id,
                "client_type": props.client_type.value,
            },
        )
        return append_query(request.redirect_uri, {"code": code, "state": request.state})

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    async def exchange_token(
        self, client: OAuthClientRecord, form: Mapping[str, str]
    ) -> dict[str, Any]:
        """Run the token endpoint for an authenticated client.

        Registered grant_types are not enforced: the static client registers
        with authorization_code only and still refreshes.

        Returns:
            RFC 6749 token response body.

        Raises:
            InvalidRequestError, InvalidGrantError, UnsupportedGrantTypeError
        """
        grant_type = form.get("grant_type")
        if not grant_type:
            raise InvalidRequestError("Missing grant_type")
        if grant_type == "authorization_code":
            return await self._exchange_authorization_code(client, form)
        if grant_type == "refresh_token":
            return await self._exchange_refresh_token(client, form)
        raise UnsupportedGrantTypeError(f"Unsupported grant_type: {grant_type}")

    async def _exchange_authorization_code(
        self, client: OAuthClientRecord, form: Mapping[str, str]
    ) -> dict[str, Any]:
        code = form.get("code")
        if not code:
            raise InvalidRequestError("Missing code")

        code_key = f"code:{hash_secret(code)}"
        code_record = await self.store.get(code_key)
        if code_record is None:
            raise InvalidGrantError("Invalid or expired authorization code")
        # Single use: consumed before anything else can fail
        await self.store.delete(code_key)

        if code_record["client_id"] != client.client_id:
            raise InvalidGrantError("Authorization code was issued to another client")

        redirect_uri = form.get("redirect_uri")
        if redirect_uri and redirect_uri != code_record["redirect_uri"]:
            raise InvalidGrantError("redirect_uri does not match the authorization request")

        challenge = code_record.get("code_challenge")
        if challenge:
            verifier = form.get("code_verifier")
            if not verifier:
                raise InvalidGrantError("Missing code_verifier")
            if not _verify_pkce(verifier, challenge):
                raise InvalidGrantError("PKCE verification failed")

        grant = await self.store.get(f"grant:{code_record['grant_id']}")
        if grant is None:
            raise InvalidGrantError("Grant no longer exists")

        props = BridgedTokenProps.model_validate(
            self.cipher.decrypt(grant["encrypted_props"])
        )
        try:
            result = await self._run_callback("authorization_code", props)
        except InvalidGrantError:
            await self.revoke_grant(grant["id"])
            raise

        return await self._issue_tokens(grant, props, result, used_refresh_id=None)

    async def _exchange_refresh_token(
        self, client: OAuthClientRecord, form: Mapping[str, str]
    ) -> dict[str, Any]:
        refresh_token = form.get("refresh_token")
        if not refresh_token:
            raise InvalidRequestError("Missing refresh_token")

        refresh_id = hash_secret(refresh_token)
        record = await self.store.get(f"refresh:{refresh_id}")
        if record is None or record["client_id"] != client.client_id:
            raise InvalidGrantError("Invalid refresh token")

        grant = await self.store.get(f"grant:{record['grant_id']}")
        if grant is None or refresh_id not in (
            grant.get("refresh_token_id"),
            grant.get("previous_refresh_token_id"),
        ):
            raise InvalidGrantError("Invalid refresh token")

        props = BridgedTokenProps.model_validate(
            self.cipher.decrypt(grant["encrypted_props"])
        )
        result = await self._run_callback("refresh_token", props)
        return await self._issue_tokens(grant, props, result, used_refresh_id=refresh_id)

    async def _run_callback(
        self, grant_type: str, props: BridgedTokenProps
    ) -> TokenExchangeResult:
        if self.token_callback is None:
            return TokenExchangeResult()
        try:
            return await self.token_callback(grant_type, props)
        except MCPServerError as e:
            logger.warning(f"Token callback failed for {grant_type}: {e}")
            raise InvalidGrantError(str(e)) from e

    async def _issue_tokens(
        self,
        grant: dict[str, Any],
        props: BridgedTokenProps,
        result: TokenExchangeResult,
        used_refresh_id: Optional[str],
    ) -> dict[str, Any]:
        grant_id = grant["id"]
        user_id = grant["user_id"]
        access_props = result.access_token_props or props
        grant_props = result.new_props or props
        ttl = result.access_token_ttl or self.config.access_token_ttl_seconds

        access_token = _new_token(user_id, grant_id)
        await self.store.put(
            f"token:{hash_secret(access_token)}",
            {
                "grant_id": grant_id,
                "client_id": grant["client_id"],
                "user_id": user_id,
                "scope": grant["scope"],
                "expires_at": int(time.time()) + ttl,
                "encrypted_props": self.cipher.encrypt(access_props.model_dump(mode="json")),
            },
            ttl=ttl,
        )

        refresh_token = _new_token(user_id, grant_id)
        refresh_id = hash_secret(refresh_token)
        await self.store.put(
            f"refresh:{refresh_id}",
            {"grant_id": grant_id, "client_id": grant["client_id"]},
            ttl=self.config.refresh_token_ttl_seconds,
        )

        current = grant.get("refresh_token_id")
        previous = grant.get("previous_refresh_token_id")
        if used_refresh_id is not None and used_refresh_id == previous:
            # The grace token is spent and the current token is superseded
            stale, previous = [previous, current], None
        else:
            # The token just used stays valid once more
            stale, previous = [previous], current
        for token_id in stale:
            if token_id:
                await self.store.delete(f"refresh:{token_id}")

        grant = {
            **grant,
            "encrypted_props": self.cipher.encrypt(grant_props.model_dump(mode="json")),
            "refresh_token_id": refresh_id,
            "previous_refresh_token_id": previous,
        }
        # Renewed on every refresh
        await self.store.put(
            f"grant:{grant_id}", grant, ttl=self.config.refresh_token_ttl_seconds
        )

        logger.info(
            "Issued tokens",
            extra={
                "grant_id": grant_id,
                "client_id": grant["client_id"],
                "expires_in": ttl,
                "refreshed": used_refresh_id is not None,
            },
        )
        return {
            "access_token": access_token,
            "token_type": "bearer",
            "expires_in": ttl,
            "refresh_token": refresh_token,
            "scope": " ".join(grant["scope"]),
        }

    # ------------------------------------------------------------------
    # Resource access
    # ------------------------------------------------------------------

    async def load_access_token(self, token: str) -> Optional[IssuedAccessToken]:
        """Resolve a bearer token, or None if unknown, expired or revoked."""
        if not token:
            return None
        record = await self.store.get(f"token:{hash_secret(token)}")
        if record is None:
            return None
        if record["expires_at"] <= int(time.time()):
            return None
        if await self.store.get(f"grant:{record['grant_id']}") is None:
            return None
        props = BridgedTokenProps.model_validate(
            self.cipher.decrypt(record["encrypted_props"])
        )
        return IssuedAccessToken(
            client_id=record["client_id"],
            user_id=record["user_id"],
            grant_id=record["grant_id"],
            scope=record["scope"],
            expires_at=record["expires_at"],
            props=props,
        )

    async def unwrap_token(self, token: str) -> Optional[BridgedTokenProps]:
        issued = await self.load_access_token(token)
        return issued.props if issued else None

    async def revoke_grant(self, grant_id: str) -> None:
        """Delete a grant and its refresh tokens. Its access tokens stop resolving."""
        grant = await self.store.get(f"grant:{grant_id}")
        if grant is None:
            return
        for token_id in (
            grant.get("refresh_token_id"),
            grant.get("previous_refresh_token_id"),
        ):
            if token_id:
                await self.store.delete(f"refresh:{token_id}")
        await self.store.delete(f"grant:{grant_id}")
        logger.info("Revoked grant", extra={"grant_id": grant_id})
