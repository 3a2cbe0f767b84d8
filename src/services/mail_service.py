"""
Outlook mail tools.

- sendEmail: send a message from the signed-in user's mailbox
- getEmails: recent messages of a mail folder
- searchEmails: full-text message search
"""

from typing import Literal

from core.exceptions import GraphAPIError
from core.factory import Domain
from services.base import GraphToolService
from services.graph_client import GraphClient
from utils.formatters import format_json


class MailService(GraphToolService):
    """Mail tools over Microsoft Graph."""

    def __init__(self, graph: GraphClient) -> None:
        super().__init__(Domain.MAIL, graph)

    def register_tools(self, mcp) -> None:
        graph = self.graph

        @mcp.tool(name="sendEmail", tags={self.domain.value})
        async def send_email(
            to: str,
            subject: str,
            body: str,
            contentType: Literal["text", "html"] = "html",
        ) -> str:
            """Send an email via Outlook.

            Args:
                to: Recipient email address
                subject: Email subject
                body: Email body content
                contentType: Content type of the body
            """
            token = self.require_access_token()
            try:
                await graph.send_email(token, to, subject, body, contentType)
            except GraphAPIError as e:
                raise self.tool_error(e, "send email") from e
            return f"Email sent successfully to {to}"

        @mcp.tool(name="getEmails", tags={self.domain.value})
        async def get_emails(count: int = 10, folder: str = "inbox") -> str:
            """Get recent emails.

            Args:
                count: Number of emails (max 50)
                folder: Mail folder
            """
            token = self.require_access_token()
            try:
                emails = await graph.get_emails(token, count=count, folder=folder)
            except GraphAPIError as e:
                raise self.tool_error(e, "get emails") from e
            return format_json(emails)

        @mcp.tool(name="searchEmails", tags={self.domain.value})
        async def search_emails(query: str, count: int = 10) -> str:
            """Search emails.

            Args:
                query: Search query
                count: Number of results (max 50)
            """
            token = self.require_access_token()
            try:
                results = await graph.search_emails(token, query=query, count=count)
            except GraphAPIError as e:
                raise self.tool_error(e, "search emails") from e
            return format_json(results)

    @property
    def tool_count(self) -> int:
        return 3
