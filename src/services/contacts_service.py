"""
Outlook contacts tools.
"""

from typing import Optional

from core.exceptions import GraphAPIError
from core.factory import Domain
from services.base import GraphToolService
from services.graph_client import GraphClient
from utils.formatters import format_json


class ContactsService(GraphToolService):
    def __init__(self, graph: GraphClient) -> None:
        super().__init__(Domain.CONTACTS, graph)

    def register_tools(self, mcp) -> None:
        graph = self.graph

        @mcp.tool(name="getContacts", tags={self.domain.value})
        async def get_contacts(count: int = 50, search: Optional[str] = None) -> str:
            """Get contacts.

            Args:
                count: Number of contacts (max 100)
                search: Match the start of the display or given name
            """
            token = self.require_access_token()
            try:
                contacts = await graph.get_contacts(token, count=count, search=search)
            except GraphAPIError as e:
                raise self.tool_error(e, "get contacts") from e
            return format_json(contacts)

    @property
    def tool_count(self) -> int:
        return 1
