"""
Outlook calendar tools.
"""

from typing import Optional

from core.exceptions import GraphAPIError
from core.factory import Domain
from services.base import GraphToolService
from services.graph_client import GraphClient
from utils.formatters import format_json


class CalendarService(GraphToolService):
    """Calendar tools over Microsoft Graph."""

    def __init__(self, graph: GraphClient) -> None:
        super().__init__(Domain.CALENDAR, graph)

    def register_tools(self, mcp) -> None:
        graph = self.graph

        @mcp.tool(name="getCalendarEvents", tags={self.domain.value})
        async def get_calendar_events(days: int = 7) -> str:
            """Get calendar events.

            Args:
                days: Days ahead (max 30)
            """
            token = self.require_access_token()
            try:
                events = await graph.get_calendar_events(token, days=days)
            except GraphAPIError as e:
                raise self.tool_error(e, "get calendar events") from e
            return format_json(events)

        @mcp.tool(name="createCalendarEvent", tags={self.domain.value})
        async def create_calendar_event(
            subject: str,
            start: str,
            end: str,
            attendees: Optional[list[str]] = None,
            body: Optional[str] = None,
        ) -> str:
            """Create calendar event.

            Args:
                subject: Event title
                start: Start time (ISO 8601, UTC)
                end: End time (ISO 8601, UTC)
                attendees: Attendee emails
                body: Event description
            """
            token = self.require_access_token()
            try:
                event = await graph.create_calendar_event(
                    token, subject, start, end, attendees=attendees, body=body
                )
            except GraphAPIError as e:
                raise self.tool_error(e, "create calendar event") from e
            return f"Event created: {event.get('id')}"

        @mcp.tool(name="getCalendars", tags={self.domain.value})
        async def get_calendars() -> str:
            """List the signed-in user's calendars."""
            token = self.require_access_token()
            try:
                calendars = await graph.get_calendars(token)
            except GraphAPIError as e:
                raise self.tool_error(e, "get calendars") from e
            return format_json(calendars)

    @property
    def tool_count(self) -> int:
        return 3
