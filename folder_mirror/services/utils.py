"""Formatting helpers for log messages."""

_SIZE_UNITS = ("KB", "MB", "GB", "TB", "PB")


def format_file_size(size_bytes: int) -> str:
    """Format a byte count for humans.

    Args:
        size_bytes: Size in bytes

    Returns:
        Whole bytes below 1 KB ("512 B"), otherwise one decimal ("1.5 GB")
    """
    if abs(size_bytes) < 1024:
        return f"{size_bytes} B"
    size = size_bytes / 1024
    for unit in _SIZE_UNITS[:-1]:
        if abs(size) < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} {_SIZE_UNITS[-1]}"


def format_duration(seconds: float) -> str:
    """Format a duration as "1h 2m 3s", dropping leading zero units."""
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
