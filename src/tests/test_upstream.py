"""
Tests for the upstream token exchange with Entra ID.

Tests validate:
- Missing credentials
- Client secret and federated credential payloads
- Code and refresh grant payloads
- Consent, rate limit and network error handling
"""

import sys
from contextlib import asynccontextmanager
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

# Add MCP server to path
mcp_server_path = Path(__file__).parent.parent
sys.path.insert(0, str(mcp_server_path))

from auth.upstream import CLIENT_ASSERTION_TYPE, UpstreamTokenExchanger  # noqa: E402
from core.exceptions import ConfigurationError, UpstreamExchangeError  # noqa: E402

TEST_TENANT_ID = "test-tenant-12345"


def create_mock_session(mock_response):
    """Create a properly mocked aiohttp.ClientSession with async context managers."""

    @asynccontextmanager
    async def mock_post(*args, **kwargs):
        yield mock_response

    mock_session = MagicMock()
    mock_session.post = mock_post

    mock_client = MagicMock()
    mock_client.return_value.__aenter__ = AsyncMock(return_value=mock_session)
    mock_client.return_value.__aexit__ = AsyncMock(return_value=None)

    return mock_client, mock_session


def create_mock_session_with_capture(mock_response, captured):
    """Create a mock session that captures the POST URL and form data."""

    @asynccontextmanager
    async def mock_post(url, *args, **kwargs):
        captured["url"] = url
        captured.update(kwargs.get("data", {}))
        yield mock_response

    mock_session = MagicMock()
    mock_session.post = mock_post

    mock_client = MagicMock()
    mock_client.return_value.__aenter__ = AsyncMock(return_value=mock_session)
    mock_client.return_value.__aexit__ = AsyncMock(return_value=None)

    return mock_client


def _response(status, body):
    mock_response = AsyncMock()
    mock_response.status = status
    mock_response.json = AsyncMock(return_value=body)
    return mock_response


TOKEN_BODY = {
    "token_type": "Bearer",
    "access_token": "graph-access-token",
    "expires_in": 3600,
    "refresh_token": "graph-refresh-token",
    "scope": "User.Read",
}


class TestMissingCredentials:
    """Missing credentials tests."""

    @pytest.mark.asyncio
    async def test_no_secret_and_no_federated_credential(self, config):
        config = config.model_copy(update={"client_secret": None})
        exchanger = UpstreamTokenExchanger(config)

        with pytest.raises(ConfigurationError, match="not configured"):
            await exchanger.exchange_code("code", "http://testserver/callback")

    @pytest.mark.asyncio
    async def test_missing_tenant(self, config):
        exchanger = UpstreamTokenExchanger(config.model_copy(update={"tenant_id": None}))

        with pytest.raises(ConfigurationError, match="TENANT_ID"):
            await exchanger.refresh("refresh")


class TestPayloads:
    """Request payload tests."""

    @pytest.mark.asyncio
    async def test_code_grant_payload(self, config):
        captured = {}
        mock_client = create_mock_session_with_capture(_response(200, TOKEN_BODY), captured)

        with patch("aiohttp.ClientSession", mock_client):
            result = await UpstreamTokenExchanger(config).exchange_code(
                "upstream-code", "http://testserver/callback"
            )

        assert result.access_token == "graph-access-token"
        assert result.refresh_token == "graph-refresh-token"
        assert captured["url"] == (
            f"https://login.microsoftonline.com/{TEST_TENANT_ID}/oauth2/v2.0/token"
        )
        assert captured["grant_type"] == "authorization_code"
        assert captured["code"] == "upstream-code"
        assert captured["redirect_uri"] == "http://testserver/callback"
        assert captured["client_id"] == config.client_id
        assert captured["client_secret"] == config.client_secret.get_secret_value()
        assert "offline_access" in captured["scope"]

    @pytest.mark.asyncio
    async def test_refresh_grant_payload(self, config):
        captured = {}
        mock_client = create_mock_session_with_capture(_response(200, TOKEN_BODY), captured)

        with patch("aiohttp.ClientSession", mock_client):
            await UpstreamTokenExchanger(config).refresh("graph-refresh-token")

        assert captured["grant_type"] == "refresh_token"
        assert captured["refresh_token"] == "graph-refresh-token"
        assert "code" not in captured

    @pytest.mark.asyncio
    async def test_federated_credential_assertion(self, config):
        config = config.model_copy(
            update={"client_secret": None, "federated_credential_oid": "mi-client-id"}
        )
        captured = {}
        mock_client = create_mock_session_with_capture(_response(200, TOKEN_BODY), captured)

        mock_credential = MagicMock()
        mock_credential.get_token = AsyncMock(return_value=MagicMock(token="mi-assertion"))
        mock_credential.close = AsyncMock()

        with patch("aiohttp.ClientSession", mock_client), patch(
            "auth.upstream.ManagedIdentityCredential", return_value=mock_credential
        ) as credential_cls:
            await UpstreamTokenExchanger(config).exchange_code("code", "http://testserver/cb")

        credential_cls.assert_called_once_with(client_id="mi-client-id")
        mock_credential.get_token.assert_awaited_once_with("api://AzureADTokenExchange/.default")
        mock_credential.close.assert_awaited_once()
        assert captured["client_assertion"] == "mi-assertion"
        assert captured["client_assertion_type"] == CLIENT_ASSERTION_TYPE
        assert "client_secret" not in captured


class TestErrors:
    """Upstream error handling tests."""

    @pytest.mark.asyncio
    async def test_consent_required(self, config):
        mock_client, _ = create_mock_session(
            _response(
                400,
                {
                    "error": "invalid_grant",
                    "error_description": "AADSTS65001: The user or administrator has not consented.",
                },
            )
        )

        with patch("aiohttp.ClientSession", mock_client):
            with pytest.raises(UpstreamExchangeError) as exc_info:
                await UpstreamTokenExchanger(config).exchange_code("code", "http://testserver/cb")

        assert exc_info.value.status == 400
        assert exc_info.value.error == "invalid_grant"

    @pytest.mark.asyncio
    async def test_rate_limited(self, config):
        mock_client, _ = create_mock_session(
            _response(429, {"error": "temporarily_unavailable"})
        )

        with patch("aiohttp.ClientSession", mock_client):
            with pytest.raises(UpstreamExchangeError) as exc_info:
                await UpstreamTokenExchanger(config).refresh("refresh")

        assert exc_info.value.status == 429

    @pytest.mark.asyncio
    async def test_success_without_access_token(self, config):
        mock_client, _ = create_mock_session(_response(200, {"token_type": "Bearer"}))

        with patch("aiohttp.ClientSession", mock_client):
            with pytest.raises(UpstreamExchangeError, match="missing access_token"):
                await UpstreamTokenExchanger(config).refresh("refresh")

    @pytest.mark.asyncio
    async def test_network_error(self, config):
        mock_client = MagicMock()
        mock_client.return_value.__aenter__ = AsyncMock(
            side_effect=aiohttp.ClientError("Network error")
        )

        with patch("aiohttp.ClientSession", mock_client):
            with pytest.raises(UpstreamExchangeError, match="network error"):
                await UpstreamTokenExchanger(config).refresh("refresh")
