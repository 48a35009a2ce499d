from .logger import setup_logging, get_logger, rpc_logger, sync_logger, api_logger
from .retry import (
    RetryPolicy,
    RpcRateLimitError,
    TradeStoreUnavailable,
    is_rate_limit_error,
    with_retry,
)
from .validation import validate_eth_address, normalize_address, is_eth_address

__all__ = [
    # Logger
    "setup_logging",
    "get_logger",
    "rpc_logger",
    "sync_logger",
    "api_logger",

    # Retry
    "RetryPolicy",
    "RpcRateLimitError",
    "TradeStoreUnavailable",
    "is_rate_limit_error",
    "with_retry",

    # Validation
    "validate_eth_address",
    "normalize_address",
    "is_eth_address",
]
