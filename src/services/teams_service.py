"""
Microsoft Teams tools.
"""

from typing import Optional

from core.exceptions import GraphAPIError
from core.factory import Domain
from services.base import GraphToolService
from services.graph_client import GraphClient
from utils.formatters import format_json


class TeamsService(GraphToolService):
    """Teams tools over Microsoft Graph."""

    def __init__(self, graph: GraphClient) -> None:
        super().__init__(Domain.TEAMS, graph)

    def register_tools(self, mcp) -> None:
        graph = self.graph

        @mcp.tool(name="sendTeamsMessage", tags={self.domain.value})
        async def send_teams_message(teamId: str, channelId: str, message: str) -> str:
            """Send Teams message.

            Args:
                teamId: Team ID
                channelId: Channel ID
                message: Message content
            """
            token = self.require_access_token()
            try:
                await graph.send_teams_message(token, teamId, channelId, message)
            except GraphAPIError as e:
                raise self.tool_error(e, "send Teams message") from e
            return "Teams message sent"

        @mcp.tool(name="createTeamsMeeting", tags={self.domain.value})
        async def create_teams_meeting(
            subject: str,
            startTime: str,
            endTime: str,
            attendees: Optional[list[str]] = None,
        ) -> str:
            """Create Teams meeting.

            Args:
                subject: Meeting title
                startTime: Start time (ISO 8601)
                endTime: End time (ISO 8601)
                attendees: Attendee emails
            """
            token = self.require_access_token()
            try:
                meeting = await graph.create_teams_meeting(
                    token, subject, startTime, endTime, attendees=attendees
                )
            except GraphAPIError as e:
                raise self.tool_error(e, "create Teams meeting") from e
            return f"Meeting created: {meeting.get('joinWebUrl')}"

        @mcp.tool(name="getTeams", tags={self.domain.value})
        async def get_teams() -> str:
            """List the Teams the signed-in user has joined."""
            token = self.require_access_token()
            try:
                teams = await graph.get_teams(token)
            except GraphAPIError as e:
                raise self.tool_error(e, "get teams") from e
            return format_json(teams)

    @property
    def tool_count(self) -> int:
        return 3
