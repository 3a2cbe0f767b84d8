"""
Tests for the downstream OAuth 2.1 server.

Tests validate:
- Client registration and authentication
- Authorization request validation and redirect URI adoption
- PKCE and single-use authorization codes
- Refresh token rotation with one grace use
- Bearer token resolution, expiry and grant revocation
"""

import base64
import hashlib
import sys
import time
from pathlib import Path
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

import pytest
import pytest_asyncio

# Add MCP server to path
mcp_server_path = Path(__file__).parent.parent
sys.path.insert(0, str(mcp_server_path))

from auth.models import BridgedTokenProps, ClientType  # noqa: E402
from core.exceptions import (  # noqa: E402
    InvalidClientError,
    InvalidGrantError,
    InvalidRequestError,
    UnsupportedGrantTypeError,
    UnsupportedResponseTypeError,
    UpstreamExchangeError,
)

REDIRECT_URI = "http://localhost:8787/oauth/callback"
VERIFIER = "verifier-" + "x" * 50


def _challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode()).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()


async def _authorize(provider, client, **overrides):
    params = {
        "response_type": "code",
        "client_id": client.client_id,
        "redirect_uri": REDIRECT_URI,
        "scope": "claudeai",
        "state": "client-state",
        "code_challenge": _challenge(VERIFIER),
        "code_challenge_method": "S256",
        **overrides,
    }
    request = await provider.parse_auth_request(params)
    props = BridgedTokenProps(
        upstream_authorization_code="upstream-code",
        upstream_redirect_uri="http://testserver/callback",
        client_type=ClientType.MCP_REMOTE,
    )
    location = await provider.complete_authorization(
        request, user_id="microsoft_user", scope=request.scope, props=props
    )
    return parse_qs(urlparse(location).query)


@pytest_asyncio.fixture
async def public_client(provider):
    return await provider.register_client(
        {"client_name": "mcp-remote", "redirect_uris": [REDIRECT_URI]}
    )


async def _code_grant(provider, client, code, verifier=VERIFIER):
    return await provider.exchange_token(
        client,
        {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": REDIRECT_URI,
            "code_verifier": verifier,
        },
    )


class TestRegistration:
    """Dynamic client registration tests."""

    @pytest.mark.asyncio
    async def test_public_client_has_no_secret(self, provider):
        client = await provider.register_client({"redirect_uris": [REDIRECT_URI]})

        assert client.client_secret is None
        assert client.is_public
        assert "client_secret" not in client.registration_response()

    @pytest.mark.asyncio
    async def test_confidential_client_secret_is_hashed_at_rest(self, provider, store):
        client = await provider.register_client(
            {
                "redirect_uris": [REDIRECT_URI],
                "token_endpoint_auth_method": "client_secret_post",
            }
        )

        stored = await store.get_client(client.client_id)
        assert client.client_secret
        assert stored.client_secret != client.client_secret

        authenticated = await provider.authenticate_client(
            client.client_id, client.client_secret
        )
        assert authenticated.client_id == client.client_id

        with pytest.raises(InvalidClientError):
            await provider.authenticate_client(client.client_id, "wrong")

    @pytest.mark.asyncio
    async def test_relative_redirect_uri_rejected(self, provider):
        with pytest.raises(InvalidRequestError):
            await provider.register_client({"redirect_uris": ["/callback"]})

    @pytest.mark.asyncio
    async def test_unsupported_grant_type_rejected(self, provider):
        with pytest.raises(InvalidRequestError):
            await provider.register_client(
                {"redirect_uris": [REDIRECT_URI], "grant_types": ["password"]}
            )

    @pytest.mark.asyncio
    async def test_unknown_client_authentication(self, provider):
        with pytest.raises(InvalidClientError):
            await provider.authenticate_client("missing")


class TestAuthorizationRequest:
    """Authorization request validation tests."""

    @pytest.mark.asyncio
    async def test_unregistered_redirect_uri(self, provider, public_client):
        with pytest.raises(InvalidRequestError):
            await provider.parse_auth_request(
                {"client_id": public_client.client_id, "redirect_uri": "http://evil.example/cb"}
            )

    @pytest.mark.asyncio
    async def test_single_registered_redirect_uri_is_default(self, provider, public_client):
        request = await provider.parse_auth_request({"client_id": public_client.client_id})
        assert request.redirect_uri == REDIRECT_URI

    @pytest.mark.asyncio
    async def test_unsupported_response_type(self, provider, public_client):
        with pytest.raises(UnsupportedResponseTypeError):
            await provider.parse_auth_request(
                {"client_id": public_client.client_id, "response_type": "token"}
            )

    @pytest.mark.asyncio
    async def test_client_without_redirect_uris_adopts_them(self, provider, store):
        client = await provider.register_client({"redirect_uris": []})

        request = await provider.parse_auth_request(
            {"client_id": client.client_id, "redirect_uri": REDIRECT_URI}
        )

        assert request.redirect_uri == REDIRECT_URI
        stored = await store.get_client(client.client_id)
        assert stored.redirect_uris == [REDIRECT_URI]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", [None, "plain"])
    async def test_only_s256_code_challenge_accepted(self, provider, public_client, method):
        params = {"client_id": public_client.client_id, "code_challenge": "abc"}
        if method:
            params["code_challenge_method"] = method

        with pytest.raises(InvalidRequestError, match="S256"):
            await provider.parse_auth_request(params)

    @pytest.mark.asyncio
    async def test_redirect_carries_code_and_state(self, provider, public_client):
        query = await _authorize(provider, public_client)

        assert query["state"] == ["client-state"]
        assert query["code"][0].startswith("microsoft_user:")


class TestAuthorizationCodeGrant:
    """Code exchange tests."""

    @pytest.mark.asyncio
    async def test_exchange_returns_bearer_tokens(self, provider, public_client, exchanger):
        code = (await _authorize(provider, public_client))["code"][0]

        tokens = await _code_grant(provider, public_client, code)

        assert tokens["token_type"] == "bearer"
        assert tokens["expires_in"] == 3600
        assert tokens["scope"] == "claudeai"
        assert tokens["refresh_token"]
        exchanger.exchange_code.assert_awaited_once_with(
            "upstream-code", "http://testserver/callback"
        )

    @pytest.mark.asyncio
    async def test_access_token_unwraps_to_upstream_token(self, provider, public_client):
        code = (await _authorize(provider, public_client))["code"][0]
        tokens = await _code_grant(provider, public_client, code)

        props = await provider.unwrap_token(tokens["access_token"])

        assert props.upstream_access_token == "graph-access-token"
        assert props.upstream_refresh_token is None
        assert props.upstream_authorization_code is None
        assert props.client_type is ClientType.MCP_REMOTE

    @pytest.mark.asyncio
    async def test_code_is_single_use(self, provider, public_client):
        code = (await _authorize(provider, public_client))["code"][0]
        await _code_grant(provider, public_client, code)

        with pytest.raises(InvalidGrantError):
            await _code_grant(provider, public_client, code)

    @pytest.mark.asyncio
    async def test_wrong_verifier_consumes_code(self, provider, public_client):
        code = (await _authorize(provider, public_client))["code"][0]

        with pytest.raises(InvalidGrantError, match="PKCE"):
            await _code_grant(provider, public_client, code, verifier="wrong")
        with pytest.raises(InvalidGrantError):
            await _code_grant(provider, public_client, code)

    @pytest.mark.asyncio
    async def test_code_bound_to_client(self, provider, public_client):
        other = await provider.register_client({"redirect_uris": [REDIRECT_URI]})
        code = (await _authorize(provider, public_client))["code"][0]

        with pytest.raises(InvalidGrantError):
            await _code_grant(provider, other, code)

    @pytest.mark.asyncio
    async def test_upstream_failure_is_invalid_grant_and_revokes(
        self, provider, public_client, exchanger, store
    ):
        exchanger.exchange_code = AsyncMock(
            side_effect=UpstreamExchangeError("Upstream token exchange failed: invalid_grant")
        )
        code = (await _authorize(provider, public_client))["code"][0]

        with pytest.raises(InvalidGrantError, match="invalid_grant"):
            await _code_grant(provider, public_client, code)

        grant_id = code.split(":")[1]
        assert await store.get(f"grant:{grant_id}") is None

    @pytest.mark.asyncio
    async def test_unexchanged_grant_expires_with_its_code(
        self, provider, public_client, store, config
    ):
        code = (await _authorize(provider, public_client))["code"][0]
        grant_id = code.split(":")[1]

        ttl = await store.ttl(f"grant:{grant_id}")

        assert ttl is not None
        assert 0 < ttl <= config.authorization_code_ttl_seconds

    @pytest.mark.asyncio
    async def test_exchanged_grant_lives_as_long_as_refresh_token(
        self, provider, public_client, store, config
    ):
        code = (await _authorize(provider, public_client))["code"][0]
        grant_id = code.split(":")[1]
        await _code_grant(provider, public_client, code)

        ttl = await store.ttl(f"grant:{grant_id}")

        assert config.authorization_code_ttl_seconds < ttl <= config.refresh_token_ttl_seconds

    @pytest.mark.asyncio
    async def test_unsupported_grant_type(self, provider, public_client):
        with pytest.raises(UnsupportedGrantTypeError):
            await provider.exchange_token(public_client, {"grant_type": "password"})


class TestRefreshTokenGrant:
    """Refresh rotation tests."""

    async def _tokens(self, provider, client):
        code = (await _authorize(provider, client))["code"][0]
        return await _code_grant(provider, client, code)

    async def _refresh(self, provider, client, refresh_token):
        return await provider.exchange_token(
            client, {"grant_type": "refresh_token", "refresh_token": refresh_token}
        )

    @pytest.mark.asyncio
    async def test_refresh_rotates_and_keeps_upstream_refresh_token(
        self, provider, public_client, exchanger
    ):
        tokens = await self._tokens(provider, public_client)

        refreshed = await self._refresh(provider, public_client, tokens["refresh_token"])

        assert refreshed["refresh_token"] != tokens["refresh_token"]
        exchanger.refresh.assert_awaited_once_with("graph-refresh-token")
        props = await provider.unwrap_token(refreshed["access_token"])
        assert props.upstream_access_token == "graph-access-token-2"

        # The upstream omitted a new refresh token; the old one is still used
        await self._refresh(provider, public_client, refreshed["refresh_token"])
        assert exchanger.refresh.await_args_list[-1].args == ("graph-refresh-token",)

    @pytest.mark.asyncio
    async def test_previous_refresh_token_has_one_grace_use(self, provider, public_client):
        tokens = await self._tokens(provider, public_client)
        first = tokens["refresh_token"]

        await self._refresh(provider, public_client, first)
        # Response lost: the client retries with the old token once
        await self._refresh(provider, public_client, first)

        with pytest.raises(InvalidGrantError):
            await self._refresh(provider, public_client, first)

    @pytest.mark.asyncio
    async def test_refresh_token_bound_to_client(self, provider, public_client):
        other = await provider.register_client({"redirect_uris": [REDIRECT_URI]})
        tokens = await self._tokens(provider, public_client)

        with pytest.raises(InvalidGrantError):
            await self._refresh(provider, other, tokens["refresh_token"])


class TestTokenResolution:
    """Bearer token lookup tests."""

    @pytest.mark.asyncio
    async def test_unknown_token(self, provider):
        assert await provider.unwrap_token("nope") is None

    @pytest.mark.asyncio
    async def test_revoked_grant_invalidates_access_token(self, provider, public_client):
        code = (await _authorize(provider, public_client))["code"][0]
        tokens = await _code_grant(provider, public_client, code)
        issued = await provider.load_access_token(tokens["access_token"])

        await provider.revoke_grant(issued.grant_id)

        assert await provider.unwrap_token(tokens["access_token"]) is None

    @pytest.mark.asyncio
    async def test_expired_token(self, provider, public_client, monkeypatch):
        code = (await _authorize(provider, public_client))["code"][0]
        tokens = await _code_grant(provider, public_client, code)
        issued_at = time.time()
        monkeypatch.setattr(time, "time", lambda: issued_at + 7200)

        assert await provider.unwrap_token(tokens["access_token"]) is None
