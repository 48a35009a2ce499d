"""
RPC endpoint rotation with time-bounded cooldowns.

Public Gnosis RPC providers throttle aggressively.  Instead of hammering a
provider that just answered 429, the rotation manager parks it for
``base + jitter`` seconds and moves on to the next healthy endpoint.  No
endpoint is ever removed: cooldowns expire on their own, and when every
endpoint is cooling down ``select()`` still hands back the current one
rather than blocking the caller.

State is process-wide (one ``endpoint_rotation`` singleton) and is only
mutated on the event loop, between suspension points.
"""

import random
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from config import settings
from utils.clock import Clock, monotonic
from utils.logger import get_logger
from utils.retry import is_rate_limit_error

logger = get_logger("endpoint_rotation")


# ==================== DATA MODEL ====================


@dataclass
class EndpointRecord:
    """One RPC endpoint and its cooldown window (monotonic seconds)."""

    url: str
    cooldown_until: Optional[float] = None
    failures: int = 0
    last_error: Optional[str] = None

    def is_cooling_down(self, now: float) -> bool:
        return self.cooldown_until is not None and now < self.cooldown_until

    def cooldown_remaining(self, now: float) -> float:
        if self.cooldown_until is None:
            return 0.0
        return max(0.0, self.cooldown_until - now)


def _exception_text(exc: BaseException) -> str:
    """Return a non-empty exception string for structured logging."""
    text = str(exc).strip()
    return text if text else repr(exc)


# ==================== ROTATION MANAGER ====================


class EndpointRotationManager:
    """Round-robin endpoint selection that skips endpoints in cooldown."""

    def __init__(
        self,
        urls: Sequence[str],
        *,
        cooldown_base: float = 30.0,
        jitter_min: float = 1.0,
        jitter_max: float = 11.0,
        max_cooldown: float = 120.0,
        clock: Clock = monotonic,
        rng: Callable[[float, float], float] = random.uniform,
        classify: Callable[[BaseException], bool] = is_rate_limit_error,
    ):
        cleaned: list[str] = []
        for raw in urls:
            url = str(raw or "").strip()
            if url and url not in cleaned:
                cleaned.append(url)
        if not cleaned:
            raise ValueError("EndpointRotationManager needs at least one endpoint")
        if min(cooldown_base, jitter_min, jitter_max, max_cooldown) < 0:
            raise ValueError("cooldown durations must be non-negative")
        if jitter_max < jitter_min:
            raise ValueError("jitter_max must be >= jitter_min")

        self._endpoints: tuple[EndpointRecord, ...] = tuple(EndpointRecord(url=u) for u in cleaned)
        self._index = 0
        self._cooldown_base = cooldown_base
        self._jitter_min = jitter_min
        self._jitter_max = jitter_max
        self._max_cooldown = max_cooldown
        self._clock = clock
        self._rng = rng
        self._classify = classify
        self._stats = {
            "selections": 0,
            "rotations": 0,
            "cooldowns_applied": 0,
            "all_cooling_down": 0,
        }

    @property
    def endpoints(self) -> tuple[EndpointRecord, ...]:
        return self._endpoints

    @property
    def current(self) -> EndpointRecord:
        return self._endpoints[self._index]

    def select(self) -> EndpointRecord:
        """Return the first endpoint not in cooldown, scanning from the pointer.

        Falls back to the current endpoint when all of them are cooling down.
        Never blocks and never raises.
        """
        now = self._clock()
        self._stats["selections"] += 1
        count = len(self._endpoints)
        for offset in range(count):
            idx = (self._index + offset) % count
            record = self._endpoints[idx]
            if not record.is_cooling_down(now):
                if idx != self._index:
                    logger.debug(
                        "Skipping RPC endpoints in cooldown",
                        skipped=offset,
                        endpoint=record.url,
                    )
                self._index = idx
                return record

        self._stats["all_cooling_down"] += 1
        current = self._endpoints[self._index]
        logger.warning(
            "All RPC endpoints cooling down, using current endpoint",
            endpoint=current.url,
            remaining_seconds=round(current.cooldown_remaining(now), 2),
        )
        return current

    def record_failure(self, endpoint: EndpointRecord, error: BaseException) -> None:
        """Register a failed call against ``endpoint`` and rotate past it.

        Rate-limit / transient errors park the endpoint for a bounded,
        jittered window.  Other errors only advance the pointer.
        """
        endpoint.failures += 1
        endpoint.last_error = _exception_text(error)

        if self._classify(error):
            now = self._clock()
            window = self._cooldown_base + self._rng(self._jitter_min, self._jitter_max)
            window = min(max(0.0, window), self._max_cooldown)
            endpoint.cooldown_until = now + window
            self._stats["cooldowns_applied"] += 1
            logger.warning(
                "RPC endpoint rate limited, cooling down",
                endpoint=endpoint.url,
                cooldown_seconds=round(window, 2),
                failures=endpoint.failures,
                error=endpoint.last_error,
            )
        else:
            logger.info(
                "RPC endpoint call failed, rotating",
                endpoint=endpoint.url,
                error_type=type(error).__name__,
                error=endpoint.last_error,
            )

        self._advance_past(endpoint)

    def record_success(self, endpoint: EndpointRecord) -> None:
        endpoint.failures = 0
        endpoint.last_error = None

    def _advance_past(self, endpoint: EndpointRecord) -> None:
        count = len(self._endpoints)
        try:
            position = self._endpoints.index(endpoint)
        except ValueError:
            # Unknown record (e.g. from a previous reset); rotate from the pointer
            position = self._index
        self._index = (position + 1) % count
        self._stats["rotations"] += 1

    def reset(self) -> None:
        """Clear every cooldown and return the pointer to the first endpoint."""
        for record in self._endpoints:
            record.cooldown_until = None
            record.failures = 0
            record.last_error = None
        self._index = 0

    def get_status(self) -> dict:
        now = self._clock()
        return {
            "current": self.current.url,
            "endpoints": [
                {
                    "url": record.url,
                    "cooling_down": record.is_cooling_down(now),
                    "cooldown_remaining_seconds": round(record.cooldown_remaining(now), 2),
                    "failures": record.failures,
                    "last_error": record.last_error,
                }
                for record in self._endpoints
            ],
            "stats": dict(self._stats),
        }


# ==================== SINGLETON ====================

endpoint_rotation = EndpointRotationManager(
    settings.GNOSIS_RPC_URLS,
    cooldown_base=settings.RPC_COOLDOWN_BASE_SECONDS,
    jitter_min=settings.RPC_COOLDOWN_JITTER_MIN_SECONDS,
    jitter_max=settings.RPC_COOLDOWN_JITTER_MAX_SECONDS,
    max_cooldown=settings.RPC_MAX_COOLDOWN_SECONDS,
)
