"""
Helper functions for formatting data into human-readable strings.
"""

from datetime import datetime
from typing import Optional

MAX_MESSAGE_LENGTH = 1000


def format_size(bytes_size: int) -> str:
    """Formats bytes into a human-readable size string (e.g., '145.3 MB')."""
    if bytes_size <= 0:
        return "0 B"
    size = float(bytes_size)
    units = ["B", "KB", "MB", "GB", "TB", "PB"]
    i = 0
    while size >= 1024 and i < len(units) - 1:
        size /= 1024
        i += 1
    return f"{size:.1f} {units[i]}"


def format_duration(seconds: float) -> str:
    """
    Formats a duration in seconds into a human-readable string (e.g., '2h 34m 12s').
    """
    s = int(seconds)
    hours, remainder = divmod(s, 3600)
    minutes, secs = divmod(remainder, 60)
    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def format_timestamp(value: Optional[datetime]) -> str:
    """Formats an aware datetime in local time, or a dash when missing."""
    if value is None:
        return "-"
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def truncate(text: Optional[str], limit: int = MAX_MESSAGE_LENGTH) -> str:
    """
    Shortens diagnostic text for logs and stored error messages.

    The end of tool output usually carries the actual error, so the tail is kept.
    """
    if not text:
        return ""
    text = text.strip()
    if len(text) <= limit:
        return text
    return f"...[{len(text) - limit} chars truncated]...\n" + text[-limit:]
