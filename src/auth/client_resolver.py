"""
Client identity resolver for the static client alias.

Some MCP tooling ships a hardcoded client id and cannot register
dynamically. That well-known id is mapped to a real client record that is
registered lazily on first use and stored as
`static_client_actual:{wellKnownId}` in the Token Store.

Concurrent first requests may both register. Both records are valid and
interchangeable, so the alias pointer is last-write-wins and no lock is taken.
"""

import logging
from typing import Optional

from auth.provider import OAuthProvider
from core.exceptions import MCPServerError, RegistrationError
from storage.token_store import TokenStore

logger = logging.getLogger(__name__)


class ClientIdentityResolver:
    """Maps requested client ids onto persisted client records."""

    def __init__(
        self,
        provider: OAuthProvider,
        store: TokenStore,
        well_known_id: str,
        client_name: str = "Microsoft 365 MCP Static Client",
    ) -> None:
        self.provider = provider
        self.store = store
        self.well_known_id = well_known_id
        self.client_name = client_name

    async def _bootstrap(self) -> str:
        """Register the static client once and persist the alias."""
        logger.info(f"Registering static MCP client: {self.well_known_id}")
        try:
            client = await self.provider.register_client(
                {
                    "client_name": self.client_name,
                    "redirect_uris": [],
                    "grant_types": ["authorization_code"],
                    "response_types": ["code"],
                    "token_endpoint_auth_method": "none",
                }
            )
        except MCPServerError as e:
            logger.error(f"Failed to register static client: {e}")
            raise RegistrationError("Failed to register MCP client") from e

        await self.store.put_static_alias(self.well_known_id, client.client_id)
        logger.info(
            "Static client alias stored",
            extra={"well_known_id": self.well_known_id, "client_id": client.client_id},
        )
        return client.client_id

    async def resolve(self, requested_id: Optional[str], bootstrap: bool = True) -> str:
        """Return the client id the downstream OAuth server should see.

        - The alias target itself passes through unchanged.
        - Any other id (the well-known id, a dynamically registered id, an
          unknown id, or no id at all) is substituted with the alias target,
          registering it first when no alias exists yet and `bootstrap` is set.
        - Without `bootstrap` and without an alias the request is left as is.

        Raises:
            RegistrationError: If bootstrapping the static client fails
        """
        alias = await self.store.get_static_alias(self.well_known_id)
        if requested_id and requested_id == alias:
            return requested_id

        if alias is None:
            if not bootstrap:
                return requested_id or self.well_known_id
            alias = await self._bootstrap()

        logger.info(
            "Using static MCP client",
            extra={"requested_client_id": requested_id, "client_id": alias},
        )
        return alias
