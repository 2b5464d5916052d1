"""Conversions between human time strings and seconds."""

import re


def parse_time(text: str) -> float:
    """Parse ``SS``, ``MM:SS`` or ``HH:MM:SS`` into seconds.

    Every part may carry a fractional component ("01:02.5"). An empty string
    is treated as zero.
    """
    text = text.strip()
    if not text:
        return 0.0

    parts = text.split(":")
    if len(parts) > 3:
        raise ValueError(f"Unrecognized time string: {text!r}")

    try:
        values = [float(p) for p in parts]
    except ValueError:
        raise ValueError(f"Unrecognized time string: {text!r}") from None

    seconds = 0.0
    for value in values:
        seconds = seconds * 60 + value
    return seconds


def format_time(seconds: float) -> str:
    """Format seconds as ``MM:SS``, or ``HH:MM:SS`` from one hour up."""
    total = int(seconds)
    h = total // 3600
    m = (total % 3600) // 60
    s = total % 60
    if h:
        return f"{h:02d}:{m:02d}:{s:02d}"
    return f"{m:02d}:{s:02d}"


def clip_filename(title: str, suffix: str = "_cut.mp4") -> str:
    """Build a filesystem-safe download name from a clip title."""
    return re.sub(r"[^A-Za-z0-9]", "_", title) + suffix
