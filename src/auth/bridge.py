"""
Authorization bridge between MCP clients and Microsoft Entra ID.

    RECEIVED                    GET /authorize parsed, client id resolved
    AWAITING_UPSTREAM_REDIRECT  approval prompt shown (skipped when the
                                approval cookie already lists the client)
    AWAITING_UPSTREAM_CALLBACK  302 to the identity provider
    COMPLETED                   GET /callback issued a downstream code
    FAILED                      any error; the client restarts at /authorize

No server-side session exists between the legs. The original downstream
request travels inside a signed `state` JWT, and prior approvals inside the
signed approval cookie.
"""

import logging
import uuid
from typing import Any, Optional
from urllib.parse import urlencode

from starlette.requests import Request
from starlette.responses import HTMLResponse, RedirectResponse, Response
from starlette.routing import Route

from auth.client_resolver import ClientIdentityResolver
from auth.models import AuthRequest, BridgedTokenProps, ClientType
from auth.provider import OAuthProvider, append_query
from auth.signing import ApprovalCookie, StateSigner
from auth.templates import render_approval_page, render_error_page
from config.settings import MCPServerConfig, get_mcp_config, get_public_base_url
from core.exceptions import (
    InvalidRequestError,
    InvalidStateError,
    MissingCodeError,
    OAuthError,
)

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/callback"
AUTHORIZE_PATH = "/authorize"


def build_upstream_authorize_url(
    config: MCPServerConfig, redirect_uri: str, state: str
) -> str:
    """Identity provider authorization URL for one bridged request."""
    params = {
        "client_id": config.client_id or "",
        "response_type": "code",
        "redirect_uri": redirect_uri,
        "scope": config.upstream_scopes,
        "state": state,
        "response_mode": "query",
    }
    return f"{config.upstream_authorize_url}?{urlencode(params)}"


class AuthorizationBridge:
    """Route handlers for /authorize and /callback."""

    def __init__(
        self,
        provider: OAuthProvider,
        resolver: ClientIdentityResolver,
        state_signer: StateSigner,
        approval_cookie: ApprovalCookie,
        config: Optional[MCPServerConfig] = None,
    ) -> None:
        self.provider = provider
        self.resolver = resolver
        self.state_signer = state_signer
        self.approval_cookie = approval_cookie
        self.config = config or get_mcp_config()

    def routes(self) -> list[Route]:
        return [
            Route(AUTHORIZE_PATH, self.authorize, methods=["GET", "POST"]),
            Route(CALLBACK_PATH, self.callback, methods=["GET"]),
        ]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _callback_url(self, request: Request) -> str:
        return f"{get_public_base_url(request, self.config)}{CALLBACK_PATH}"

    def _encode_state(self, auth_request: AuthRequest, client_type: ClientType) -> str:
        return self.state_signer.encode(
            {
                "request": auth_request.model_dump(mode="json"),
                "client_type": client_type.value,
            }
        )

    def _decode_state(self, value: Optional[str]) -> tuple[AuthRequest, ClientType]:
        payload: dict[str, Any] = self.state_signer.decode(value)
        raw_request = payload.get("request")
        if not isinstance(raw_request, dict) or not raw_request.get("client_id"):
            raise InvalidStateError("Invalid state")
        try:
            auth_request = AuthRequest.model_validate(raw_request)
            client_type = ClientType(payload.get("client_type", ClientType.UNKNOWN.value))
        except ValueError as e:
            raise InvalidStateError("Invalid state") from e
        return auth_request, client_type

    def _redirect_upstream(
        self, request: Request, auth_request: AuthRequest, client_type: ClientType
    ) -> RedirectResponse:
        logger.info(
            "Redirecting to identity provider",
            extra={"client_id": auth_request.client_id, "client_type": client_type.value},
        )
        location = build_upstream_authorize_url(
            self.config,
            self._callback_url(request),
            self._encode_state(auth_request, client_type),
        )
        return RedirectResponse(location, status_code=302)

    def _error_response(self, request: Request, error: OAuthError) -> Response:
        if "text/html" in request.headers.get("accept", ""):
            return HTMLResponse(
                render_error_page(
                    server_name=self.config.server_name,
                    message=error.description or error.error_code,
                ),
                status_code=error.status_code,
            )
        return error.to_response()

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    async def authorize(self, request: Request) -> Response:
        try:
            if request.method == "POST":
                return await self._authorize_decision(request)
            return await self._authorize_entry(request)
        except OAuthError as e:
            logger.warning(f"Authorization request rejected: {e.error_code} {e.description}")
            return self._error_response(request, e)
        except Exception:
            logger.exception("Unexpected error at /authorize")
            return self._error_response(request, OAuthError("Authorization failed"))

    async def _authorize_entry(self, request: Request) -> Response:
        params = dict(request.query_params)
        requested_id = params.get("client_id")
        if not requested_id:
            raise InvalidRequestError("Missing client_id parameter")

        params["client_id"] = await self.resolver.resolve(requested_id)
        auth_request = await self.provider.parse_auth_request(params)
        client_type = ClientType.from_redirect_uri(auth_request.redirect_uri)

        approved = self.approval_cookie.decode(
            request.cookies.get(self.approval_cookie.name)
        )
        if auth_request.client_id in approved:
            logger.debug(f"Client {auth_request.client_id} already approved")
            return self._redirect_upstream(request, auth_request, client_type)

        client = await self.provider.lookup_client(auth_request.client_id)
        page = render_approval_page(
            server_name=self.config.server_name,
            client_name=client.client_name if client else auth_request.client_id,
            redirect_uri=auth_request.redirect_uri,
            scopes=auth_request.scope,
            action=AUTHORIZE_PATH,
            state=self._encode_state(auth_request, client_type),
        )
        return HTMLResponse(page, headers={"Cache-Control": "no-store"})

    async def _authorize_decision(self, request: Request) -> Response:
        form = await request.form()
        auth_request, client_type = self._decode_state(form.get("state"))

        if form.get("action") != "approve":
            logger.info(
                "User denied authorization",
                extra={"client_id": auth_request.client_id},
            )
            location = append_query(
                auth_request.redirect_uri,
                {"error": "access_denied", "state": auth_request.state},
            )
            return RedirectResponse(location, status_code=302)

        approved = self.approval_cookie.decode(
            request.cookies.get(self.approval_cookie.name)
        )
        approved.add(auth_request.client_id)

        response = self._redirect_upstream(request, auth_request, client_type)
        response.set_cookie(
            self.approval_cookie.name,
            self.approval_cookie.encode(approved),
            max_age=self.config.approval_cookie_max_age_seconds,
            path="/",
            httponly=True,
            secure=request.url.scheme == "https",
            samesite="lax",
        )
        return response

    async def callback(self, request: Request) -> Response:
        try:
            auth_request, client_type = self._decode_state(
                request.query_params.get("state")
            )

            upstream_error = request.query_params.get("error")
            if upstream_error:
                description = request.query_params.get("error_description") or upstream_error
                raise InvalidRequestError(f"Microsoft sign-in failed: {description}")

            code = request.query_params.get("code")
            if not code:
                raise MissingCodeError("No authorization code received from Microsoft")

            logger.info(
                "OAuth callback received",
                extra={"client_id": auth_request.client_id, "client_type": client_type.value},
            )

            props = BridgedTokenProps(
                upstream_authorization_code=code,
                upstream_redirect_uri=self._callback_url(request),
                client_type=client_type,
            )
            redirect_to = await self.provider.complete_authorization(
                auth_request,
                user_id=f"microsoft_{uuid.uuid4().hex}",
                scope=auth_request.scope,
                props=props,
                metadata={"label": f"Microsoft 365 User ({client_type.value})"},
            )
        except OAuthError as e:
            logger.warning(f"OAuth callback rejected: {e.error_code} {e.description}")
            return self._error_response(request, e)

        return RedirectResponse(redirect_to, status_code=302)
