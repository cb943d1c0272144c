"""
utils.py — Utility functions for live_watcher
"""

import datetime as dt
from typing import Dict, Optional
from urllib.parse import quote

# Seconds per poll interval unit, keyed by upper-case unit name
_UNIT_SECONDS: Dict[str, float] = {
    "MILLIS": 0.001,
    "SECONDS": 1.0,
    "MINUTES": 60.0,
    "HOURS": 3600.0,
    "HALF_DAYS": 43200.0,
    "DAYS": 86400.0,
}

# ffmpeg progress output fields that are emitted many times per second
PROGRESS_PREFIXES = ("frame=", "size=", "time=", "bitrate=")

FILE_TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"


def interval_seconds(qty: int, unit: str) -> float:
    """Convert a poll interval given as quantity and unit into seconds.

    Args:
        qty: The number of units
        unit: The unit name, e.g. SECONDS or minutes

    Returns:
        The interval length in seconds

    Raises:
        ValueError: if the unit is not known
    """
    factor = _UNIT_SECONDS.get(str(unit).strip().upper())
    if factor is None:
        raise ValueError(
            f"Unknown poll interval unit '{unit}', expected one of {', '.join(_UNIT_SECONDS)}"
        )
    return qty * factor


def live_page_url(channel: str) -> str:
    """Construct the public live page URL of a channel."""
    return f"https://www.tiktok.com/@{quote(channel.strip().lstrip('@'), safe='._-')}/live"


def file_timestamp(now: Optional[dt.datetime] = None) -> str:
    return (now or dt.datetime.now()).strftime(FILE_TIMESTAMP_FORMAT)


def is_progress_line(line: str) -> bool:
    """Check whether a capture tool output segment is progress noise.

    ffmpeg rewrites its progress line in place with a carriage return, so
    callers split output on "\\r" as well as "\\n" and check each segment.
    """
    return line.startswith(PROGRESS_PREFIXES)


def tail(text: str, limit: int = 500) -> str:
    text = text.strip()
    if len(text) <= limit:
        return text
    return "..." + text[-limit:]
