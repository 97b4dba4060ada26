"""
Time helpers shared by models and services.
"""
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns of the store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def format_duration(seconds: int) -> str:
    """
    Format a duration as HH:MM:SS.

    Hours are not wrapped at 24, so a 30 hour total renders as 30:00:00.
    Negative or missing values render as 00:00:00.
    """
    total = max(0, int(seconds or 0))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
