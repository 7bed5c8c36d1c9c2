"""Formatting utilities for consistent CLI output."""

_BYTE_UNITS = ("B", "K", "M", "G", "T")


def format_bytes(value: int) -> str:
    """Format a byte count compactly.

    Returns:
        "512B", "1.5K", "230.0M" and so on, using powers of 1024.
    """
    size = float(max(0, value))
    for unit in _BYTE_UNITS[:-1]:
        if size < 1024:
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}{_BYTE_UNITS[-1]}"


def format_seconds(seconds: float) -> str:
    """Format an elapsed time as "3d 4h", "2h 5m", "7m 12s" or "42s"."""
    total = int(max(0, seconds))
    days, rem = divmod(total, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def format_command(cmd: list[str], name: str, width: int | None = None) -> str:
    """Join a command line, falling back to `name` when it is empty.

    Args:
        cmd: argv as read from the process
        name: short process name
        width: truncate to this many characters, marking the cut with ".."
    """
    text = " ".join(cmd) if cmd else name
    if width is not None and len(text) > width:
        return text[: max(0, width - 2)] + ".."
    return text
