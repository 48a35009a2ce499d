"""Time helpers shared by the sync engine.

Cooldowns and cache TTLs are measured on the monotonic clock so wall-clock
adjustments never extend or shorten a window.  Components accept a
``clock`` callable (defaulting to :func:`monotonic`) so tests can drive
time explicitly.

``utcnow`` keeps the **naive** UTC datetimes the rest of the codebase
expects, without the DeprecationWarning ``datetime.utcnow()`` raises on
3.12+.
"""

import time
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], float]


def monotonic() -> float:
    """Seconds on the monotonic clock."""
    return time.monotonic()


def utcnow() -> datetime:
    """Return the current UTC time as a naive (tzinfo=None) datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_block_time(raw: object) -> datetime:
    """Parse a store timestamp (ISO-8601 string, epoch seconds or datetime)."""
    if isinstance(raw, datetime):
        return to_utc_naive(raw)
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return datetime.fromtimestamp(float(raw), tz=timezone.utc).replace(tzinfo=None)
    text = str(raw or "").strip()
    if not text:
        raise ValueError("block time is empty")
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return to_utc_naive(datetime.fromisoformat(text))
