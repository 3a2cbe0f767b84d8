"""
Bridged access token verifier.

Resolves the opaque access tokens issued by the OAuth bridge through the
Token Store and exposes their upstream props to the tool layer:
- Expired, revoked or unknown tokens resolve to None
- Stored props that fail decryption resolve to None
- FastMCP TokenVerifier compatibility for middleware integration
"""

import logging
from typing import Optional

from fastmcp.server.auth import AccessToken, TokenVerifier
from pydantic import AnyHttpUrl

from auth.models import BridgedTokenProps
from auth.provider import OAuthProvider
from core.exceptions import TokenVerificationError

logger = logging.getLogger(__name__)

PROPS_CLAIM = "props"


class BridgedTokenVerifier(TokenVerifier):
    """Token verifier for access tokens minted by the OAuth bridge.

    Extends FastMCP's TokenVerifier. The returned AccessToken carries the
    bridged props in `claims["props"]`; use `props_from_access_token` to read
    them back as a model.
    """

    def __init__(
        self,
        provider: OAuthProvider,
        base_url: AnyHttpUrl | str | None = None,
        required_scopes: list[str] | None = None,
    ) -> None:
        super().__init__(base_url=base_url, required_scopes=required_scopes)
        self.provider = provider

    async def verify_token(self, token: str) -> Optional[AccessToken]:
        """Resolve a bearer token.

        Returns:
            AccessToken if the token is live, None otherwise
        """
        try:
            issued = await self.provider.load_access_token(token)
        except TokenVerificationError as e:
            logger.error(f"Token verification failed: {e}")
            return None

        if issued is None:
            logger.debug("Bearer token unknown or expired")
            return None

        logger.debug(
            f"Token verified. Client: {issued.client_id}, Grant: {issued.grant_id}"
        )
        return AccessToken(
            token=token,
            client_id=issued.client_id,
            scopes=issued.scope,
            expires_at=issued.expires_at,
            claims={
                "sub": issued.user_id,
                "grant_id": issued.grant_id,
                PROPS_CLAIM: issued.props.model_dump(mode="json"),
            },
        )


def props_from_access_token(access_token: Optional[AccessToken]) -> Optional[BridgedTokenProps]:
    """Bridged props carried by a verified AccessToken, if any."""
    if access_token is None:
        return None
    raw = (access_token.claims or {}).get(PROPS_CLAIM)
    if raw is None:
        return None
    return BridgedTokenProps.model_validate(raw)
