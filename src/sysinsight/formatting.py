"""Formatting utilities for consistent CLI output."""

from datetime import datetime, timezone

from sysinsight.models import GB, MB


def format_bytes(num_bytes: float) -> str:
    """Format a byte count with a binary unit.

    Returns:
        "3.0GB" at or above 1GB, "512MB" at or above 1MB, otherwise "900KB"
    """
    if num_bytes >= GB:
        return f"{num_bytes / GB:.1f}GB"
    if num_bytes >= MB:
        return f"{num_bytes / MB:.0f}MB"
    return f"{num_bytes / 1024:.0f}KB"


def format_timestamp(timestamp: float | None) -> str:
    """Format an epoch timestamp as UTC, or "-" when missing."""
    if timestamp is None:
        return "-"
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def format_span(oldest: float | None, newest: float | None) -> str:
    """Format the time covered by a range of timestamps ("3d 4h", "12m")."""
    if oldest is None or newest is None:
        return "-"
    seconds = int(newest - oldest)
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes = rem // 60
    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
