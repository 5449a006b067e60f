"""
Time helpers.

Every timestamp stored in the identity graph is tz-aware UTC. Platform
adapters hand over whatever their SDK produced; `coerce_utc` normalises it at
the boundary.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

UTC = timezone.utc

# Injectable source of "now". Services take one so tests can pin time.
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


def coerce_utc(value: datetime, *, assume_naive_is_utc: bool = True) -> datetime:
    """Normalise to tz-aware UTC. Naive values are read as UTC unless refused."""
    if value.tzinfo is None or value.utcoffset() is None:
        if not assume_naive_is_utc:
            raise ValueError(f"Naive datetime without UTC offset: {value.isoformat()}")
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def isoformat_z(value: datetime) -> str:
    """ISO 8601 with a `Z` suffix, as written into audit details and error meta."""
    return coerce_utc(value).isoformat().replace("+00:00", "Z")
