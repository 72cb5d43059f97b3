"""Human-readable formatting of byte counts, transfer speeds and durations."""

from __future__ import annotations

import struct
from datetime import timedelta

KB = 1024
MB = KB * KB
GB = MB * KB
TB = GB * KB

_BYTE_UNITS = ((TB, "TB", 1), (GB, "GB", 1), (MB, "MB", 1), (KB, "KB", 1))
_SPEED_UNITS = ((TB, "TB/s", 1), (GB, "GB/s", 1), (MB, "MB/s", 1), (KB, "KB/s", 1))


def _single(value: float) -> float:
    """Round a value to single precision."""
    return struct.unpack("f", struct.pack("f", value))[0]


def _pick_unit(value: float, units, fallback: str) -> tuple[int, str, int]:
    for factor, unit, decimals in units:
        if value >= factor:
            return factor, unit, decimals
    return 1, fallback, 0


def format_bytes(count: int) -> str:
    """Format a byte count using binary units, e.g. ``'   1.5 KB'``."""
    if count < 0:
        raise ValueError("byte count must not be negative")
    factor, unit, decimals = _pick_unit(count, _BYTE_UNITS, "B ")
    value = _single(_single(float(count)) / _single(float(factor)))
    return f"{value:6.{decimals}f} {unit}"


def format_speed(speed: float) -> str:
    """Format a speed in bytes per second using binary units."""
    factor, unit, decimals = _pick_unit(speed, _SPEED_UNITS, "B/s ")
    return f"{speed / factor:6.{decimals}f} {unit}"


def format_duration(seconds: float | timedelta) -> str:
    """Format a duration as hours, minutes and seconds with fixed-width fields.

    Fractions of a second are dropped; leading zero fields are blanked.
    """
    if isinstance(seconds, timedelta):
        seconds = seconds.total_seconds()
    if seconds < 0:
        raise ValueError("duration must not be negative")

    hours, rest = divmod(int(seconds), 3600)
    minutes, secs = divmod(rest, 60)

    parts = [
        f"{hours:2}小时" if hours > 0 else "   ",
        f"{minutes:2}分钟" if hours > 0 or minutes > 0 else "   ",
        f"{secs:2}秒",
    ]
    return "".join(parts)