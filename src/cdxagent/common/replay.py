"""Timestamp window check against replayed requests.

The check is stateless: there is no nonce cache, so a captured request can be
replayed until its timestamp leaves the window. Keep the tolerance small.
"""

from __future__ import annotations

import re
import time

DEFAULT_TOLERANCE_SECONDS = 60

# Oversized values saturate at the signed 64-bit range.
_INT64_MAX = 2**63 - 1
_MAX_DIGITS = len(str(_INT64_MAX))

_LEADING_INT = re.compile(r"\s*([+-]?)(\d+)")


def parse_timestamp(value: str | None) -> int:
    """Parse the leading integer of a timestamp header; anything else is 0."""
    if not value:
        return 0
    match = _LEADING_INT.match(value)
    if not match:
        return 0

    sign = -1 if match.group(1) == "-" else 1
    digits = match.group(2).lstrip("0") or "0"
    if len(digits) > _MAX_DIGITS:
        return sign * _INT64_MAX
    return sign * min(int(digits), _INT64_MAX)


def is_timestamp_valid(
    timestamp: str | None,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: int | None = None,
) -> bool:
    """Return True if the timestamp lies within ``tolerance_seconds`` of now.

    Timestamps too far in the past and too far in the future are rejected
    alike.
    """
    if now is None:
        now = int(time.time())
    return abs(now - parse_timestamp(timestamp)) <= tolerance_seconds
