"""
Response formatting helpers for tool results.
"""

import json
from typing import Any, Optional


def format_json(data: Any) -> str:
    """Pretty JSON text for tool content."""
    return json.dumps(data, indent=2, ensure_ascii=False, default=str)


def format_success_response(
    action: str, details: Optional[dict[str, Any]] = None, summary: str = ""
) -> str:
    """Format a successful tool result.

    Args:
        action: Short name of what was done
        details: Structured result fields
        summary: One-line human readable summary

    Returns:
        JSON text
    """
    return format_json(
        {
            "status": "success",
            "action": action,
            "summary": summary,
            "details": details or {},
        }
    )


def format_error_response(error_message: str, context: str) -> str:
    """Format a tool failure message, e.g. "Failed to get emails: ..."."""
    return f"Failed to {context}: {error_message}"
