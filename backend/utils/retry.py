import asyncio
import random
from dataclasses import dataclass, field
from functools import wraps
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

import httpx

from utils.logger import get_logger

logger = get_logger("retry")

T = TypeVar("T")

RATE_LIMIT_STATUS_CODES: Tuple[int, ...] = (429,)
TRANSIENT_STATUS_CODES: Tuple[int, ...] = (429, 500, 502, 503, 504)

# Substrings that public RPC providers put in rate-limit / throttling messages
_RATE_LIMIT_MARKERS = (
    "429",
    "rate limit",
    "rate-limit",
    "ratelimit",
    "too many requests",
    "limit exceeded",
    "request limit",
    "capacity exceeded",
)


class RpcRateLimitError(Exception):
    """JSON-RPC level throttling (HTTP 200 with a rate-limit error body)."""


class TradeStoreUnavailable(Exception):
    """The persisted trade store could not be reached."""


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt ceiling plus backoff function for a retry loop.

    ``delay_for(attempt)`` is the sleep before retry number ``attempt + 1``
    (``attempt`` is zero-based).  A ``base_delay`` of 0 means retry
    immediately, which is what endpoint rotation wants: moving to the next
    endpoint is already the backoff.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: Tuple[Type[BaseException], ...] = field(
        default=(
            httpx.TimeoutException,
            httpx.NetworkError,
            httpx.RemoteProtocolError,
            ConnectionError,
            asyncio.TimeoutError,
            RpcRateLimitError,
            TradeStoreUnavailable,
        )
    )
    retryable_status_codes: Tuple[int, ...] = TRANSIENT_STATUS_CODES

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must be non-negative")

    def delay_for(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        return calculate_delay(attempt, self, rng)

    def is_retryable(self, error: BaseException) -> bool:
        return is_retryable_error(error, self)


def calculate_delay(
    attempt: int, config: RetryPolicy, rng: Callable[[], float] = random.random
) -> float:
    """Calculate delay with exponential backoff and optional jitter"""
    if config.base_delay <= 0:
        return 0.0
    delay = min(config.base_delay * (config.exponential_base**attempt), config.max_delay)
    if config.jitter:
        delay = min(delay * (0.5 + rng()), config.max_delay)
    return delay


def is_retryable_error(error: BaseException, config: RetryPolicy) -> bool:
    """Check if an error should be retried"""
    if isinstance(error, config.retryable_exceptions):
        return True

    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in config.retryable_status_codes

    return False


def is_rate_limit_error(error: BaseException) -> bool:
    """True for throttling and transient transport failures.

    These are the failures that earn an RPC endpoint a cooldown; anything
    else (a revert, a malformed response) says nothing about the endpoint's
    health.
    """
    if isinstance(error, (RpcRateLimitError, httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in TRANSIENT_STATUS_CODES
    if isinstance(error, (ConnectionError, asyncio.TimeoutError)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _RATE_LIMIT_MARKERS)


def with_retry(config: Optional[RetryPolicy] = None):
    """Decorator for async functions with retry logic"""
    if config is None:
        config = RetryPolicy()

    def decorator(func: Callable[..., Awaitable[T]]):
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            last_error: Optional[BaseException] = None

            for attempt in range(config.max_attempts):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    last_error = e

                    if not config.is_retryable(e):
                        logger.error(
                            "Non-retryable error",
                            function=func.__name__,
                            error=str(e),
                            error_type=type(e).__name__,
                        )
                        raise

                    if attempt < config.max_attempts - 1:
                        delay = config.delay_for(attempt)
                        logger.warning(
                            "Retrying after error",
                            function=func.__name__,
                            attempt=attempt + 1,
                            max_attempts=config.max_attempts,
                            delay=delay,
                            error=str(e),
                        )
                        await asyncio.sleep(delay)
                    else:
                        logger.error(
                            "All retry attempts exhausted",
                            function=func.__name__,
                            attempts=config.max_attempts,
                            error=str(e),
                        )

            raise last_error

        return wrapper

    return decorator
