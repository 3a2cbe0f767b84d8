"""
Upstream token exchange with Microsoft Entra ID.

Redeems authorization codes and refresh tokens at the identity provider's
token endpoint on behalf of the OAuth bridge.

Supports two client authentication methods:
1. Client Secret (works locally and in Azure) - sent as client_secret.
2. Federated Identity Credential (Azure-only, secretless) - a managed identity
   token is sent as a jwt-bearer client_assertion.

Calls are never retried: an authorization code can be redeemed once, and a
refresh that failed is reported rather than repeated.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

import aiohttp
from azure.identity.aio import ManagedIdentityCredential
from pydantic import ValidationError

from auth.models import UpstreamTokenResponse
from config.settings import MCPServerConfig, get_mcp_config
from core.exceptions import ConfigurationError, UpstreamExchangeError

logger = logging.getLogger(__name__)

# Audience for managed identity token exchange (federated credential)
# See: https://learn.microsoft.com/en-us/entra/workload-id/workload-identity-federation-config-app-trust-managed-identity
MI_TOKEN_EXCHANGE_AUDIENCE = "api://AzureADTokenExchange"
CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"


class UpstreamTokenExchanger:
    """Client of the identity provider's token endpoint."""

    def __init__(self, config: Optional[MCPServerConfig] = None) -> None:
        self.config = config or get_mcp_config()

    async def _client_credentials(self) -> dict[str, str]:
        """Client authentication form fields.

        Client secret takes priority; the federated credential is used only
        when no secret is configured.
        """
        config = self.config

        if config.client_secret:
            logger.debug("Using client secret for upstream token call")
            return {"client_secret": config.client_secret.get_secret_value()}

        if config.federated_credential_oid:
            logger.debug("Using federated identity credential for upstream token call")
            credential = ManagedIdentityCredential(
                client_id=config.federated_credential_oid
            )
            try:
                mi_token = await credential.get_token(
                    f"{MI_TOKEN_EXCHANGE_AUDIENCE}/.default"
                )
            except Exception as e:
                logger.error(f"Managed identity token request failed: {e}")
                raise UpstreamExchangeError(
                    f"Federated credential unavailable: {e}"
                ) from e
            finally:
                await credential.close()
            return {
                "client_assertion_type": CLIENT_ASSERTION_TYPE,
                "client_assertion": mi_token.token,
            }

        raise ConfigurationError(
            "Upstream client authentication not configured: Set CLIENT_SECRET "
            "(works locally and in Azure) or FEDERATED_CREDENTIAL_OID (Azure-only, secretless)"
        )

    async def _post(self, form: dict[str, str], grant_type: str) -> UpstreamTokenResponse:
        config = self.config
        if not config.tenant_id or not config.client_id:
            raise ConfigurationError(
                "TENANT_ID and CLIENT_ID must be configured for upstream token calls"
            )

        data = {
            "client_id": config.client_id,
            **(await self._client_credentials()),
            **form,
            "grant_type": grant_type,
            "scope": config.upstream_scopes,
        }

        logger.info(f"Calling upstream token endpoint (grant_type={grant_type})")

        try:
            async with aiohttp.ClientSession() as session:
                start_time = datetime.now(timezone.utc)

                async with session.post(
                    config.upstream_token_url,
                    data=data,
                    timeout=aiohttp.ClientTimeout(total=10),
                ) as resp:
                    latency_ms = (
                        datetime.now(timezone.utc) - start_time
                    ).total_seconds() * 1000

                    try:
                        body = await resp.json(content_type=None)
                    except ValueError:
                        body = {}
                    if not isinstance(body, dict):
                        body = {}

                    if resp.status == 200:
                        try:
                            token = UpstreamTokenResponse.model_validate(body)
                        except ValidationError as e:
                            raise UpstreamExchangeError(
                                "Upstream token response missing access_token",
                                status=resp.status,
                            ) from e
                        logger.info(
                            f"Upstream {grant_type} exchange successful (latency: {latency_ms:.0f}ms)"
                        )
                        return token

                    error = body.get("error", "unknown")
                    error_desc = body.get("error_description", "No description")

                    if "AADSTS65001" in error_desc or "has not consented" in error_desc:
                        logger.error(
                            f"Upstream exchange failed ({resp.status}): User has not consented "
                            f"to the requested Graph permissions. Error: {error} - {error_desc}"
                        )
                    elif resp.status == 429:
                        logger.error(
                            f"Upstream exchange rate limited (429, latency: {latency_ms:.0f}ms): {error_desc}"
                        )
                    else:
                        logger.error(
                            f"Upstream exchange failed ({resp.status}, latency: {latency_ms:.0f}ms): "
                            f"{error} - {error_desc}"
                        )

                    raise UpstreamExchangeError(
                        f"Upstream token exchange failed: {error}",
                        status=resp.status,
                        error=error,
                    )

        except aiohttp.ClientError as e:
            logger.error(f"Network error during upstream token exchange: {e}")
            raise UpstreamExchangeError(f"Upstream network error: {e}") from e

    async def exchange_code(self, code: str, redirect_uri: str) -> UpstreamTokenResponse:
        """Redeem an upstream authorization code.

        Args:
            code: Authorization code received at /callback
            redirect_uri: The exact redirect URI sent in the authorize request

        Returns:
            Parsed token endpoint response

        Raises:
            UpstreamExchangeError: On any non-200 response or network failure
        """
        return await self._post(
            {"code": code, "redirect_uri": redirect_uri}, "authorization_code"
        )

    async def refresh(self, refresh_token: str) -> UpstreamTokenResponse:
        """Obtain a fresh upstream access token with a refresh token."""
        return await self._post({"refresh_token": refresh_token}, "refresh_token")
