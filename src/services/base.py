"""
Shared base for tool services backed by Microsoft Graph.
"""

from fastmcp.exceptions import ToolError

from core.exceptions import GraphAPIError
from core.factory import Domain, MCPToolBase
from services.graph_client import GraphClient
from utils.auth_utils import get_upstream_access_token
from utils.formatters import format_error_response


class GraphToolService(MCPToolBase):
    """Tool service whose tools call Graph with the bound upstream token.

    Tools raise ToolError on failure; the dispatcher returns those as
    `isError` results.
    """

    def __init__(self, domain: Domain, graph: GraphClient) -> None:
        super().__init__(domain)
        self.graph = graph

    @staticmethod
    def require_access_token() -> str:
        try:
            return get_upstream_access_token()
        except ValueError as e:
            raise ToolError(str(e)) from e

    @staticmethod
    def tool_error(error: GraphAPIError, context: str) -> ToolError:
        return ToolError(format_error_response(str(error), context))
