"""Helpers for formatting progress, durations and sizes."""

from __future__ import annotations

import re
from typing import Optional

_TIME_PATTERN = re.compile(r"time=(\d+):(\d+):(\d+)")

# The tail of an export is spent muxing and moving the index to the front of
# the file, so progress parsed from the encoder stops short of completion.
MAX_RUNNING_PERCENT = 95


def format_duration(seconds: float) -> str:
    """Return an ``Xh Ym Zs`` style duration string."""
    total_seconds = max(0, int(seconds))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds_remaining = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m {seconds_remaining}s"
    if minutes:
        return f"{minutes}m {seconds_remaining}s"
    return f"{seconds_remaining}s"


def format_seconds(value: float) -> str:
    """Millisecond-precision seconds without trailing zeros (``65``, ``1.5``)."""
    text = f"{value:.3f}".rstrip("0").rstrip(".")
    return text or "0"


def format_size(num_bytes: int) -> str:
    return f"{num_bytes / 1048576:.1f} MB"


def parse_encoder_time(line: str) -> Optional[int]:
    """Seconds encoded so far from a ``time=HH:MM:SS`` token, if present."""
    match = _TIME_PATTERN.search(line)
    if not match:
        return None
    hours, minutes, seconds = (int(group) for group in match.groups())
    return hours * 3600 + minutes * 60 + seconds


def encode_percent(elapsed_sec: float, total_sec: float) -> int:
    """Percent complete, capped below 100 until the encoder exits."""
    if total_sec <= 0:
        return 0
    return min(MAX_RUNNING_PERCENT, int(100 * elapsed_sec // total_sec))


__all__ = [
    "MAX_RUNNING_PERCENT",
    "encode_percent",
    "format_duration",
    "format_seconds",
    "format_size",
    "parse_encoder_time",
]
