"""Utility functions for CLI output formatting."""

from datetime import datetime, timezone
from typing import Optional

from cli.constants import VALUE_PREVIEW_LENGTH


def format_timestamp(timestamp_ms: int) -> str:
    """
    Format a millisecond timestamp as a UTC ISO-8601 string.

    Logical clock values are seeded from wall-clock milliseconds, so they
    render meaningfully too.

    Args:
        timestamp_ms: Milliseconds since the epoch

    Returns:
        Formatted string (e.g., "2024-05-01T12:00:00.123Z")
    """
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return moment.strftime('%Y-%m-%dT%H:%M:%S.') + f"{timestamp_ms % 1000:03d}Z"


def preview_value(value: Optional[str], limit: int = VALUE_PREVIEW_LENGTH) -> str:
    """
    Render a value for one-line listings.

    Args:
        value: Stored value, None for tombstones
        limit: Maximum characters shown before truncating

    Returns:
        Quoted value, truncated with an ellipsis when longer than limit
    """
    if value is None:
        return "<deleted>"
    if len(value) > limit:
        return repr(value[:limit]) + "..."
    return repr(value)
