"""Formatting helpers shared by the console interfaces."""
from datetime import datetime, timezone
from typing import Optional


def format_size(size_bytes: float) -> str:
    """Format size in bytes to a human-readable string."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if size_bytes < 1024:
            return f"{size_bytes:.2f} {unit}" if unit != 'B' else f"{int(size_bytes)} B"
        size_bytes /= 1024
    return f"{size_bytes:.2f} PB"


def format_duration(seconds: Optional[float]) -> str:
    """Format a duration in seconds, e.g. "45s", "3m 12s", "1h 05m"."""
    if seconds is None:
        return "-"
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m {seconds % 60:02d}s"
    return f"{seconds // 3600}h {(seconds % 3600) // 60:02d}m"


def format_timestamp(value: Optional[datetime]) -> str:
    """Local time representation of a stored UTC timestamp."""
    if value is None:
        return "-"
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")
