"""
Microsoft Graph API client.

Thin async wrapper over the Graph REST endpoints used by the tool services.
Every call takes the caller's upstream access token; the client itself holds
no user state. Read-only listings that change rarely (calendars, teams,
contacts, profile) are cached in the Token Store per token.
"""

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import aiohttp

from config.settings import MCPServerConfig, get_mcp_config
from core.exceptions import GraphAPIError
from storage.token_store import TokenStore
from utils.date_utils import calendar_window

logger = logging.getLogger(__name__)

MAX_EMAILS = 50
MAX_CALENDAR_DAYS = 30
MAX_CONTACTS = 100

EMAIL_FIELDS = "id,subject,from,receivedDateTime,bodyPreview,isRead"
SEARCH_FIELDS = "id,subject,from,receivedDateTime,bodyPreview"
EVENT_FIELDS = "id,subject,start,end,attendees,organizer,webLink"
CALENDAR_FIELDS = "id,name,color,canEdit,owner"
TEAM_FIELDS = "id,displayName,description,webUrl"
CONTACT_FIELDS = "id,displayName,emailAddresses,businessPhones,mobilePhone"
PROFILE_FIELDS = "id,displayName,mail,userPrincipalName,jobTitle,department,companyName"


def _odata_quote(value: str) -> str:
    return value.replace("'", "''")


class GraphClient:
    """Client for Microsoft Graph on behalf of one bridged user per call."""

    def __init__(
        self,
        config: Optional[MCPServerConfig] = None,
        cache: Optional[TokenStore] = None,
    ) -> None:
        self.config = config or get_mcp_config()
        self.cache = cache

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(
        self,
        access_token: str,
        method: str,
        url: str,
        params: Optional[dict[str, str]] = None,
        body: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        if not url.startswith("http"):
            url = f"{self.config.graph_root}{url}"
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

        try:
            async with aiohttp.ClientSession() as session:
                start_time = datetime.now(timezone.utc)
                async with session.request(
                    method,
                    url,
                    headers=headers,
                    params=params,
                    json=body if method != "GET" else None,
                    timeout=aiohttp.ClientTimeout(total=30),
                ) as resp:
                    latency_ms = (
                        datetime.now(timezone.utc) - start_time
                    ).total_seconds() * 1000

                    if resp.status >= 400:
                        error_text = await resp.text()
                        try:
                            message = json.loads(error_text)["error"]["message"]
                        except (ValueError, KeyError, TypeError):
                            message = error_text or "Unknown error"
                        logger.error(
                            f"Graph {method} {url} failed ({resp.status}, latency: {latency_ms:.0f}ms)"
                        )
                        raise GraphAPIError(resp.status, message)

                    logger.debug(
                        f"Graph {method} {url} -> {resp.status} (latency: {latency_ms:.0f}ms)"
                    )
                    if resp.status == 204:
                        return {}
                    return await resp.json(content_type=None) or {}

        except aiohttp.ClientError as e:
            logger.error(f"Network error calling Graph: {e}")
            raise GraphAPIError(0, f"Network error: {e}") from e

    async def _cached(
        self,
        access_token: str,
        name: str,
        url: str,
        params: Optional[dict[str, str]] = None,
    ) -> Any:
        if self.cache is None:
            data = await self._request(access_token, "GET", url, params)
            return data["value"] if "value" in data else data

        token_key = hashlib.sha256(access_token.encode()).hexdigest()[:32]
        param_key = json.dumps(params or {}, sort_keys=True)
        cache_key = f"graph:{token_key}:{name}:{param_key}"

        cached = await self.cache.get_cached(cache_key)
        if cached is not None:
            logger.debug(f"Graph cache hit for {name}")
            return cached

        data = await self._request(access_token, "GET", url, params)
        result = data["value"] if "value" in data else data
        await self.cache.put_cached(
            cache_key, result, ttl=self.config.graph_cache_ttl_seconds
        )
        return result

    # ------------------------------------------------------------------
    # Mail
    # ------------------------------------------------------------------

    async def send_email(
        self, access_token: str, to: str, subject: str, body: str, content_type: str = "html"
    ) -> dict[str, Any]:
        message = {
            "message": {
                "subject": subject,
                "body": {
                    "contentType": "text" if content_type == "text" else "html",
                    "content": body,
                },
                "toRecipients": [{"emailAddress": {"address": to}}],
            }
        }
        return await self._request(access_token, "POST", "/me/sendMail", body=message)

    async def get_emails(
        self, access_token: str, count: int = 10, folder: str = "inbox"
    ) -> list[dict[str, Any]]:
        top = min(count or 10, MAX_EMAILS)
        data = await self._request(
            access_token,
            "GET",
            f"/me/mailFolders/{folder or 'inbox'}/messages",
            {"$top": str(top), "$select": EMAIL_FIELDS},
        )
        return data.get("value", [])

    async def search_emails(
        self, access_token: str, query: str, count: int = 10
    ) -> list[dict[str, Any]]:
        top = min(count or 10, MAX_EMAILS)
        data = await self._request(
            access_token,
            "GET",
            "/me/messages",
            {"$search": f'"{query}"', "$top": str(top), "$select": SEARCH_FIELDS},
        )
        return data.get("value", [])

    # ------------------------------------------------------------------
    # Calendar
    # ------------------------------------------------------------------

    async def get_calendar_events(
        self, access_token: str, days: int = 7
    ) -> list[dict[str, Any]]:
        start, end = calendar_window(min(days or 7, MAX_CALENDAR_DAYS))
        data = await self._request(
            access_token,
            "GET",
            "/me/calendarView",
            {"startDateTime": start, "endDateTime": end, "$select": EVENT_FIELDS},
        )
        return data.get("value", [])

    async def create_calendar_event(
        self,
        access_token: str,
        subject: str,
        start: str,
        end: str,
        attendees: Optional[list[str]] = None,
        body: Optional[str] = None,
    ) -> dict[str, Any]:
        event = {
            "subject": subject,
            "start": {"dateTime": start, "timeZone": "UTC"},
            "end": {"dateTime": end, "timeZone": "UTC"},
            "attendees": [
                {"emailAddress": {"address": email}, "type": "required"}
                for email in attendees or []
            ],
            "body": {"contentType": "html", "content": body or ""},
        }
        return await self._request(access_token, "POST", "/me/events", body=event)

    async def get_calendars(self, access_token: str) -> list[dict[str, Any]]:
        return await self._cached(
            access_token, "calendars", "/me/calendars", {"$select": CALENDAR_FIELDS}
        )

    # ------------------------------------------------------------------
    # Teams
    # ------------------------------------------------------------------

    async def send_teams_message(
        self, access_token: str, team_id: str, channel_id: str, message: str
    ) -> dict[str, Any]:
        return await self._request(
            access_token,
            "POST",
            f"/teams/{team_id}/channels/{channel_id}/messages",
            body={"body": {"contentType": "html", "content": message}},
        )

    async def create_teams_meeting(
        self,
        access_token: str,
        subject: str,
        start_time: str,
        end_time: str,
        attendees: Optional[list[str]] = None,
    ) -> dict[str, Any]:
        meeting = {
            "subject": subject,
            "startDateTime": start_time,
            "endDateTime": end_time,
            "participants": {
                "attendees": [
                    {"identity": {"user": {"id": email}}} for email in attendees or []
                ]
            },
        }
        return await self._request(access_token, "POST", "/me/onlineMeetings", body=meeting)

    async def get_teams(self, access_token: str) -> list[dict[str, Any]]:
        return await self._cached(
            access_token, "teams", "/me/joinedTeams", {"$select": TEAM_FIELDS}
        )

    # ------------------------------------------------------------------
    # Contacts and profile
    # ------------------------------------------------------------------

    async def get_contacts(
        self, access_token: str, count: int = 50, search: Optional[str] = None
    ) -> list[dict[str, Any]]:
        params = {"$top": str(min(count or 50, MAX_CONTACTS)), "$select": CONTACT_FIELDS}
        if search:
            term = _odata_quote(search)
            params["$filter"] = (
                f"startswith(displayName,'{term}') or startswith(givenName,'{term}')"
            )
        return await self._cached(access_token, "contacts", "/me/contacts", params)

    async def get_user_profile(self, access_token: str) -> dict[str, Any]:
        return await self._cached(
            access_token, "profile", "/me", {"$select": PROFILE_FIELDS}
        )
