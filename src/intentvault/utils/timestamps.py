"""
Timestamp utilities used across intentvault:
- ISO-8601 timestamp generator
- Epoch millisecond wall clock (wire format for intents)
- Monotonic clock for TTLs and rate windows
"""

from __future__ import annotations
import datetime as _dt
import time


def utc_now() -> _dt.datetime:
    """Return a timezone-aware UTC datetime."""
    return _dt.datetime.now(tz=_dt.timezone.utc)


def now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string with Z suffix."""
    return utc_now().isoformat().replace("+00:00", "Z")


def now_ms() -> int:
    """Wall-clock epoch milliseconds."""
    return int(time.time() * 1000)


def monotonic() -> float:
    """
    Monotonic seconds, independent of system clock changes.
    Used for cache TTLs and rate-limit windows.
    """
    return time.monotonic()
