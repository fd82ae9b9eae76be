"""Formatting utilities for consistent output across CLI, logs and events."""


def format_bytes(value: float) -> str:
    """Format a byte count with a binary unit ("512 B", "1.5 GB")."""
    for unit in ("B", "KB", "MB", "GB"):
        if abs(value) < 1024:
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TB"


def format_duration(seconds: float) -> str:
    """Format a duration compactly.

    Returns:
        "42s" below a minute, "3m 05s" below an hour, "1h 02m" above.
    """
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    minutes, secs = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {secs:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes:02d}m"
