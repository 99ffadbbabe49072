"""Progress formatting for long-running copies."""

from __future__ import annotations

from typing import Optional


def human_size(size_bytes):
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KiB", "MiB", "GiB", "TiB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PiB"


def format_eta(seconds):
    """Format ETA in HH:MM:SS or MM:SS format."""
    if seconds is None:
        return None
    seconds = int(seconds)
    if seconds < 0:
        return None
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours:d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def format_progress_line(
    title: str,
    bytes_copied: Optional[int],
    total_bytes: Optional[int],
    rate: Optional[float] = None,
    eta: Optional[str] = None,
) -> str:
    """Format progress information into a single terminal line."""
    parts = [title]
    if bytes_copied is None:
        parts.append("working...")
    else:
        written = f"wrote {human_size(bytes_copied)}"
        if total_bytes:
            written = f"{written} of {human_size(total_bytes)} ({(bytes_copied / total_bytes) * 100:.1f}%)"
        parts.append(written)
    if rate:
        rate_part = f"{human_size(rate)}/s"
        if eta:
            rate_part = f"{rate_part} ETA {eta}"
        parts.append(rate_part)
    return " | ".join(parts)
