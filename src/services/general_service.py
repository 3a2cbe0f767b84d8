"""
General purpose MCP tools service.

This service provides two tools:
- authenticate: sign-in status of the current connection
- getProfile: the signed-in user's profile from Graph API
"""

from typing import Optional

from config.settings import MCPServerConfig, get_mcp_config
from core.exceptions import GraphAPIError
from core.factory import Domain
from services.base import GraphToolService
from services.graph_client import GraphClient
from utils.auth_utils import get_current_props, get_user_id_safe
from utils.date_utils import get_current_timestamp
from utils.formatters import format_success_response


class GeneralService(GraphToolService):
    """General purpose tools for common operations."""

    def __init__(
        self, graph: GraphClient, config: Optional[MCPServerConfig] = None
    ) -> None:
        """Initialize the general service."""
        super().__init__(Domain.GENERAL, graph)
        self.config = config or get_mcp_config()

    def register_tools(self, mcp) -> None:
        """Register general tools with the MCP server.

        Args:
            mcp: The FastMCP server instance to register tools with.
        """
        graph = self.graph

        @mcp.tool(name="authenticate", tags={self.domain.value})
        async def authenticate() -> str:
            """Report the Microsoft 365 sign-in status of this connection.

            Calling any tool requires a completed sign-in, so an unauthenticated
            client is sent to the server's authorization URL before this runs.
            """
            self.require_access_token()
            props = get_current_props()
            return format_success_response(
                action="Authenticate",
                details={
                    "authenticated": True,
                    "client_type": props.client_type.value,
                    "timestamp": get_current_timestamp(),
                },
                summary="Already authenticated with Microsoft 365.",
            )

        @mcp.tool(name="getProfile", tags={self.domain.value})
        async def get_profile() -> str:
            """Get the signed-in user's Microsoft 365 profile.

            Requires authentication.
            """
            token = self.require_access_token()
            try:
                profile = await graph.get_user_profile(token)
            except GraphAPIError as e:
                raise self.tool_error(e, "get user profile") from e

            details = {
                "user_id": get_user_id_safe(),
                "display_name": profile.get("displayName"),
                "email": profile.get("mail") or profile.get("userPrincipalName"),
                "job_title": profile.get("jobTitle"),
                "department": profile.get("department"),
                "company_name": profile.get("companyName"),
                "timestamp": get_current_timestamp(),
            }
            return format_success_response(
                action="Get User Profile",
                details=details,
                summary=f"Retrieved Microsoft 365 profile for {details['display_name']}",
            )

    @property
    def tool_count(self) -> int:
        """Return the number of tools provided by this service.

        Returns:
            The number of tools (2: authenticate, getProfile).
        """
        return 2
