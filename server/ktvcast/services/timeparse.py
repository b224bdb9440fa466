"""Renderer time string parsing.

Renderers report RelTime/TrackDuration in several shapes:
HH:MM:SS, H:MM:SS, MM:SS and SS, sometimes with a fractional suffix
("00:01:02.500"). Some return NOT_IMPLEMENTED or an all-zero time when they
don't track position at all; those are "unknown", not errors.
"""

from __future__ import annotations

from datetime import datetime

from .exceptions import TimeParseError

_FORMATS = ("%H:%M:%S", "%M:%S", "%S")
_UNKNOWN_TIMES = ("", "00:00:00", "0:00:00")


def is_unknown_time(value: str | None) -> bool:
    """True for the sentinels renderers use when they don't know the time."""
    if value is None:
        return True
    t = value.strip()
    return t in _UNKNOWN_TIMES or t.upper() == "NOT_IMPLEMENTED"


def _to_seconds(parsed: datetime) -> int:
    return parsed.hour * 3600 + parsed.minute * 60 + parsed.second


def parse_time_to_seconds(value: str) -> int:
    """Parse a renderer time string into whole seconds.

    Raises:
        TimeParseError: value is not in any supported shape
    """
    trimmed = value.strip()
    # Drop fractional seconds ("00:01:02.500" -> "00:01:02")
    head, dot, fraction = trimmed.rpartition(".")
    if dot and head and fraction.isdigit():
        trimmed = head

    for fmt in _FORMATS:
        try:
            return _to_seconds(datetime.strptime(trimmed, fmt))
        except ValueError:
            continue

    # Normalize each component to two digits and retry strictly
    parts = trimmed.split(":")
    if len(parts) == 3 and all(p.strip().isdigit() for p in parts):
        formatted = ":".join(f"{int(p):02d}" for p in parts)
        try:
            return _to_seconds(datetime.strptime(formatted, "%H:%M:%S"))
        except ValueError:
            pass

    raise TimeParseError(value)


def format_hms(seconds: int) -> str:
    """Render seconds as HH:MM:SS."""
    seconds = max(int(seconds), 0)
    h = seconds // 3600
    m = (seconds % 3600) // 60
    s = seconds % 60
    return f"{h:02d}:{m:02d}:{s:02d}"


def remaining_seconds(current: int, total: int) -> int:
    """Seconds left in the track, never negative."""
    return max(total - current, 0)
