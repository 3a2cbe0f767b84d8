"""
Token lifecycle callback.

Invoked by the downstream OAuth server at authorization-code exchange and at
every refresh. Calls the identity provider and shapes its answer into the
props the downstream server persists:

- access-token props: bound to one issued access token, carry the upstream
  access token
- refresh props: bound to the refresh grant, carry the upstream refresh token

The consumed upstream authorization code is dropped from both.
"""

import logging
from typing import Optional

from auth.models import BridgedTokenProps, TokenExchangeResult, UpstreamTokenResponse
from auth.upstream import UpstreamTokenExchanger
from core.exceptions import UpstreamExchangeError

logger = logging.getLogger(__name__)

AUTHORIZATION_CODE_GRANT = "authorization_code"
REFRESH_TOKEN_GRANT = "refresh_token"


class TokenLifecycleCallback:
    """Bridges downstream grant events to upstream token calls."""

    def __init__(self, exchanger: UpstreamTokenExchanger) -> None:
        self.exchanger = exchanger

    async def __call__(
        self, grant_type: str, props: BridgedTokenProps
    ) -> TokenExchangeResult:
        if grant_type == AUTHORIZATION_CODE_GRANT:
            return await self._on_authorization_code(props)
        if grant_type == REFRESH_TOKEN_GRANT:
            return await self._on_refresh(props)
        logger.debug(f"No bridging for grant type {grant_type}")
        return TokenExchangeResult()

    async def _on_authorization_code(
        self, props: BridgedTokenProps
    ) -> TokenExchangeResult:
        if not props.upstream_authorization_code:
            raise UpstreamExchangeError("No upstream authorization code in grant props")
        if not props.upstream_redirect_uri:
            raise UpstreamExchangeError("No upstream redirect URI in grant props")

        upstream = await self.exchanger.exchange_code(
            props.upstream_authorization_code, props.upstream_redirect_uri
        )
        logger.info(
            "Upstream authorization code redeemed",
            extra={
                "client_type": props.client_type.value,
                "has_refresh_token": bool(upstream.refresh_token),
            },
        )
        return self._shape(props, upstream, upstream.refresh_token)

    async def _on_refresh(self, props: BridgedTokenProps) -> TokenExchangeResult:
        if not props.upstream_refresh_token:
            raise UpstreamExchangeError("No upstream refresh token in grant props")

        upstream = await self.exchanger.refresh(props.upstream_refresh_token)
        rotated = bool(upstream.refresh_token)
        logger.info(
            "Upstream token refreshed",
            extra={"client_type": props.client_type.value, "rotated": rotated},
        )
        # The identity provider may omit a new refresh token; keep the old one
        return self._shape(
            props, upstream, upstream.refresh_token or props.upstream_refresh_token
        )

    @staticmethod
    def _shape(
        props: BridgedTokenProps,
        upstream: UpstreamTokenResponse,
        refresh_token: Optional[str],
    ) -> TokenExchangeResult:
        access_token_props = props.model_copy(
            update={
                "upstream_authorization_code": None,
                "upstream_access_token": upstream.access_token,
                "upstream_token_type": upstream.token_type,
                "upstream_scope": upstream.scope,
                "upstream_refresh_token": None,
            }
        )
        new_props = props.model_copy(
            update={
                "upstream_authorization_code": None,
                "upstream_access_token": None,
                "upstream_token_type": upstream.token_type,
                "upstream_scope": upstream.scope,
                "upstream_refresh_token": refresh_token,
            }
        )
        return TokenExchangeResult(
            access_token_props=access_token_props,
            new_props=new_props,
            access_token_ttl=upstream.expires_in,
        )
