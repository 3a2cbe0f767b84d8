"""
Date helpers for Graph queries and tool output.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional


def get_current_timestamp() -> str:
    """Current UTC time in ISO 8601 format."""
    return datetime.now(timezone.utc).isoformat()


def to_graph_datetime(value: datetime) -> str:
    """Format a datetime as Graph expects in query strings (UTC, millisecond precision)."""
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def calendar_window(days: int, now: Optional[datetime] = None) -> tuple[str, str]:
    """Start and end of a calendar view covering the next `days` days."""
    start = now or datetime.now(timezone.utc)
    return to_graph_datetime(start), to_graph_datetime(start + timedelta(days=days))
