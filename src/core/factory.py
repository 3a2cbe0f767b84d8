"""
Tool registry assembly.

Each Microsoft Graph domain (mail, calendar, teams, contacts) plus the
general account tools is one service. The factory collects the services
and registers all of their tools on a single FastMCP instance, which the
protocol dispatcher serves over WebSocket, SSE and JSON-RPC.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Optional

from fastmcp import FastMCP

from core.exceptions import ServiceRegistrationError

DEFAULT_INSTRUCTIONS = (
    "Microsoft 365 tools for Outlook mail, calendar, Teams and contacts. "
    "Tool discovery works without signing in; calling a tool requires a "
    "completed Microsoft sign-in through the server's OAuth flow."
)


class Domain(Enum):
    """Microsoft 365 area a service's tools belong to."""

    GENERAL = "general"
    MAIL = "mail"
    CALENDAR = "calendar"
    TEAMS = "teams"
    CONTACTS = "contacts"


class MCPToolBase(ABC):
    """One domain's worth of tools.

    Subclasses register their tools in `register_tools` and report how many
    they register in `tool_count` (used by /info and startup logging).
    """

    def __init__(self, domain: Domain) -> None:
        self.domain = domain

    @abstractmethod
    def register_tools(self, mcp: FastMCP) -> None:
        """Attach this service's tools to the registry."""

    @property
    @abstractmethod
    def tool_count(self) -> int:
        """Number of tools `register_tools` adds."""


class MCPToolFactory:
    """Collects one service per domain and builds the tool registry."""

    def __init__(self) -> None:
        self._services: Dict[Domain, MCPToolBase] = {}
        self._mcp_server: Optional[FastMCP] = None

    def register_service(self, service: MCPToolBase) -> None:
        """Add a service.

        Raises:
            ServiceRegistrationError: If the domain already has a service.
        """
        if service.domain in self._services:
            raise ServiceRegistrationError(
                f"Service already registered for domain: {service.domain.value}"
            )
        self._services[service.domain] = service

    def create_mcp_server(
        self,
        name: str = "microsoft-365-mcp",
        instructions: Optional[str] = None,
    ) -> FastMCP:
        """Build the FastMCP registry holding every registered service's tools.

        Args:
            name: Server name reported in the initialize result.
            instructions: Instructions reported in the initialize result.
        """
        self._mcp_server = FastMCP(name, instructions=instructions or DEFAULT_INSTRUCTIONS)
        for service in self._services.values():
            service.register_tools(self._mcp_server)
        return self._mcp_server

    def get_tool_summary(self) -> Dict[str, Any]:
        """Service and tool counts, per domain and in total."""
        return {
            "total_services": len(self._services),
            "total_tools": sum(service.tool_count for service in self._services.values()),
            "services": {
                domain.value: {
                    "tool_count": service.tool_count,
                    "class_name": service.__class__.__name__,
                }
                for domain, service in self._services.items()
            },
        }
