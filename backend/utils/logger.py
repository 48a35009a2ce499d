import logging
import sys
import json
from utils.clock import utcnow
from typing import Any


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            log_data["data"] = extra_data

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Decimals, datetimes and enums in trade fields
        return json.dumps(log_data, default=str)


class KeyValueFormatter(logging.Formatter):
    """Human-readable formatter that appends structured fields as key=value pairs."""

    def __init__(self):
        super().__init__("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            pairs = " ".join(f"{k}={v}" for k, v in extra_data.items())
            line = f"{line} | {pairs}"
        return line


class ContextLogger:
    """Structured logger: keyword arguments become fields of the record.

        logger.warning("RPC endpoint rate limited, cooling down", endpoint=url, cooldown_seconds=31.4)
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _log(self, level: int, msg: str, **fields: Any):
        if not self.logger.isEnabledFor(level):
            return
        self.logger.log(
            level,
            msg,
            stacklevel=3,  # report the caller, not the wrapper
            extra={"extra_data": fields or None},
        )

    def debug(self, msg: str, **fields: Any):
        self._log(logging.DEBUG, msg, **fields)

    def info(self, msg: str, **fields: Any):
        self._log(logging.INFO, msg, **fields)

    def warning(self, msg: str, **fields: Any):
        self._log(logging.WARNING, msg, **fields)

    def error(self, msg: str, **fields: Any):
        self._log(logging.ERROR, msg, **fields)


def setup_logging(level: str = "INFO", json_format: bool = True):
    """Configure application logging"""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Clear existing handlers
    root_logger.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(JSONFormatter() if json_format else KeyValueFormatter())
    root_logger.addHandler(console_handler)

    # Suppress noisy libraries
    for noisy in ("httpx", "httpcore", "asyncio", "aiosqlite", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> ContextLogger:
    """Get a context-aware logger"""
    return ContextLogger(name)


# Pre-configured loggers
rpc_logger = get_logger("rpc")
sync_logger = get_logger("trade_sync")
api_logger = get_logger("api")
