"""Timestamp utilities for datasync.

Sync loop and in-flight timestamps are kept as Unix epoch milliseconds, which
is also how they are written into dataset snapshots.
"""

import time
from datetime import datetime, timezone
from typing import Optional


def current_millis() -> int:
    """Get current time as Unix epoch milliseconds."""
    return int(time.time() * 1000)


def millis_to_datetime(ms: Optional[int]) -> Optional[datetime]:
    """Convert epoch milliseconds to a timezone-aware UTC datetime.

    Args:
        ms: Epoch milliseconds or None

    Returns:
        UTC datetime, or None if ms is None
    """
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def format_millis(ms: Optional[int]) -> str:
    """Format epoch milliseconds in the local timezone for display.

    Args:
        ms: Epoch milliseconds or None

    Returns:
        "YYYY-MM-DD HH:MM:SS" in local time, or "never" if ms is None
    """
    dt = millis_to_datetime(ms)
    if dt is None:
        return "never"
    return dt.astimezone().strftime("%Y-%m-%d %H:%M:%S")
