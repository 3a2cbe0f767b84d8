"""
Test configuration for Microsoft 365 MCP Server tests.

Provides shared fixtures for:
- Bridge configuration with test secrets
- In-memory Token Store, provider and resolver
- Mock upstream token exchanger
- Starlette application and TestClient
"""

import os
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from cryptography.fernet import Fernet
from key_value.aio.stores.memory import MemoryStore

# Add the MCP server to path
mcp_server_path = Path(__file__).parent.parent
sys.path.insert(0, str(mcp_server_path))

from auth.client_resolver import ClientIdentityResolver  # noqa: E402
from auth.models import UpstreamTokenResponse  # noqa: E402
from auth.provider import OAuthProvider  # noqa: E402
from auth.signing import PropsCipher  # noqa: E402
from auth.token_exchange import TokenLifecycleCallback  # noqa: E402
from config.settings import MCPServerConfig, reset_config  # noqa: E402
from storage.token_store import TokenStore  # noqa: E402


# =============================================================================
# Test Constants
# =============================================================================

TEST_TENANT_ID = "test-tenant-12345"
TEST_CLIENT_ID = "test-client-67890"
TEST_CLIENT_SECRET = "test-secret-abcdef"
TEST_STATIC_CLIENT_ID = "rWJu8WV42zC5pfGT"
TEST_REDIRECT_URI = "http://localhost:8787/oauth/callback"


# =============================================================================
# Auto-use fixtures for environment isolation
# =============================================================================


@pytest.fixture(autouse=True)
def prevent_dotenv_loading(monkeypatch, tmp_path):
    """Prevent Pydantic settings from reading .env file during tests.

    This fixture runs automatically before each test to ensure
    environment isolation from the development .env file.
    """
    original_cwd = os.getcwd()

    empty_env = tmp_path / ".env"
    empty_env.write_text("")
    os.chdir(tmp_path)

    yield

    os.chdir(original_cwd)


@pytest.fixture(autouse=True)
def reset_global_config():
    reset_config()
    yield
    reset_config()


def _clear_auth_env(monkeypatch):
    """Helper to clear any existing bridge environment variables."""
    for var in [
        "TENANT_ID",
        "CLIENT_ID",
        "CLIENT_SECRET",
        "FEDERATED_CREDENTIAL_OID",
        "COOKIE_SECRET",
        "STATE_SECRET",
        "ENCRYPTION_KEY",
        "PUBLIC_BASE_URL",
    ]:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def mock_env_full_auth(monkeypatch):
    """Set all required environment variables for the bridge."""
    _clear_auth_env(monkeypatch)
    monkeypatch.setenv("TENANT_ID", TEST_TENANT_ID)
    monkeypatch.setenv("CLIENT_ID", TEST_CLIENT_ID)
    monkeypatch.setenv("CLIENT_SECRET", TEST_CLIENT_SECRET)
    monkeypatch.setenv("COOKIE_SECRET", "cookie-secret-for-tests-0123456789abcdef")
    monkeypatch.setenv("STATE_SECRET", "state-secret-for-tests-0123456789abcdef")
    monkeypatch.setenv("ENCRYPTION_KEY", Fernet.generate_key().decode())


@pytest.fixture
def mock_env_missing_secret(monkeypatch):
    """Tenant and client configured but no credential and no bridge secrets."""
    _clear_auth_env(monkeypatch)
    monkeypatch.setenv("TENANT_ID", TEST_TENANT_ID)
    monkeypatch.setenv("CLIENT_ID", TEST_CLIENT_ID)


# =============================================================================
# Bridge Fixtures
# =============================================================================


@pytest.fixture
def config(monkeypatch) -> MCPServerConfig:
    """Complete bridge configuration with short stream lifetimes."""
    _clear_auth_env(monkeypatch)
    return MCPServerConfig(
        tenant_id=TEST_TENANT_ID,
        client_id=TEST_CLIENT_ID,
        client_secret=TEST_CLIENT_SECRET,
        cookie_secret="cookie-secret-for-tests-0123456789abcdef",
        state_secret="state-secret-for-tests-0123456789abcdef",
        encryption_key=Fernet.generate_key().decode(),
        static_client_id=TEST_STATIC_CLIENT_ID,
        sse_keepalive_seconds=0.01,
        sse_idle_timeout_seconds=0.05,
        websocket_idle_timeout_seconds=1.0,
    )


@pytest.fixture
def store() -> TokenStore:
    return TokenStore(MemoryStore())


@pytest.fixture
def cipher(config) -> PropsCipher:
    return PropsCipher(config.encryption_key.get_secret_value())


@pytest.fixture
def upstream_tokens() -> UpstreamTokenResponse:
    return UpstreamTokenResponse(
        access_token="graph-access-token",
        token_type="Bearer",
        expires_in=3600,
        refresh_token="graph-refresh-token",
        scope="User.Read Mail.Read",
    )


@pytest.fixture
def exchanger(upstream_tokens):
    """Upstream token exchanger that never leaves the process."""
    mock_exchanger = MagicMock()
    mock_exchanger.exchange_code = AsyncMock(return_value=upstream_tokens)
    mock_exchanger.refresh = AsyncMock(
        return_value=upstream_tokens.model_copy(
            update={"access_token": "graph-access-token-2", "refresh_token": None}
        )
    )
    return mock_exchanger


@pytest.fixture
def provider(store, cipher, exchanger, config) -> OAuthProvider:
    return OAuthProvider(
        store, cipher, token_callback=TokenLifecycleCallback(exchanger), config=config
    )


@pytest.fixture
def resolver(provider, store) -> ClientIdentityResolver:
    return ClientIdentityResolver(provider, store, well_known_id=TEST_STATIC_CLIENT_ID)


@pytest.fixture
def app(config, store, exchanger):
    from server import create_app

    return create_app(config, store=store, exchanger=exchanger)


@pytest.fixture
def client(app):
    from starlette.testclient import TestClient

    with TestClient(app, follow_redirects=False) as test_client:
        yield test_client
