from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings

# Get the directory where this config file is located.
_BACKEND_DIR = Path(__file__).parent.resolve()


def _detect_project_root(backend_dir: Path) -> Path:
    """Resolve project root from the backend directory in the repo layout."""
    return backend_dir.parent.resolve()


_PROJECT_ROOT = _detect_project_root(_BACKEND_DIR)
_DEFAULT_DB_PATH = (_PROJECT_ROOT / "data" / "trade_history.db").resolve()
_SQLITE_ASYNC_PREFIX = "sqlite+aiosqlite:///"
_SQLITE_SYNC_PREFIX = "sqlite:///"


class Settings(BaseSettings):
    # Gnosis Chain JSON-RPC endpoints, rotated on failure (order matters)
    GNOSIS_RPC_URLS: list[str] = [
        "https://rpc.ankr.com/gnosis",
        "https://gnosis-mainnet.public.blastapi.io",
        "https://gnosis.drpc.org",
        "https://gnosis-rpc.publicnode.com",
        "https://1rpc.io/gnosis",
    ]
    CHAIN_ID: int = 100  # Gnosis Chain
    RPC_TIMEOUT_SECONDS: float = 8.0

    # Endpoint rotation cooldowns (applied on rate-limit / transient errors)
    RPC_COOLDOWN_BASE_SECONDS: float = 30.0
    RPC_COOLDOWN_JITTER_MIN_SECONDS: float = 1.0
    RPC_COOLDOWN_JITTER_MAX_SECONDS: float = 11.0
    RPC_MAX_COOLDOWN_SECONDS: float = 120.0  # Hard ceiling on any cooldown window

    # Token symbol resolution
    SYMBOL_MAX_ATTEMPTS: int = 3  # RPC attempts per token before caching a miss
    BASE_CURRENCY_SYMBOL: str = "sDAI"  # Fallback when the market config names none

    # Trade history sync
    TRADE_CACHE_TTL_SECONDS: float = 600.0  # 10 minutes
    TRADE_POLLING_ENABLED: bool = True
    TRADE_POLL_INTERVAL_SECONDS: float = 10.0
    TRADE_REALTIME_ENABLED: bool = True
    TRADE_FETCH_MAX_ATTEMPTS: int = 3
    TRADE_FETCH_RETRY_BASE_DELAY: float = 1.0
    TRADE_FETCH_RETRY_MAX_DELAY: float = 8.0

    # Database - canonical path under project-root data directory
    DATABASE_URL: str = f"sqlite+aiosqlite:///{_DEFAULT_DB_PATH}"

    # Production Settings
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    CORS_ORIGINS: list[str] = ["*"]

    @field_validator("GNOSIS_RPC_URLS", mode="before")
    @classmethod
    def _normalize_rpc_urls(cls, value: object) -> object:
        """Accept a comma-separated string and trim accidental quotes/whitespace."""
        if isinstance(value, str) and not value.strip().startswith("["):
            value = value.split(",")
        if not isinstance(value, (list, tuple)):
            return value
        urls: list[str] = []
        for raw in value:
            text = str(raw or "").strip().strip('"').strip("'").rstrip("/")
            if text and text not in urls:
                urls.append(text)
        return urls

    @field_validator(
        "RPC_COOLDOWN_BASE_SECONDS",
        "RPC_COOLDOWN_JITTER_MIN_SECONDS",
        "RPC_COOLDOWN_JITTER_MAX_SECONDS",
        "RPC_MAX_COOLDOWN_SECONDS",
    )
    @classmethod
    def _non_negative_seconds(cls, value: float) -> float:
        if value < 0:
            raise ValueError("cooldown durations must be non-negative")
        return value

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: object) -> object:
        """Normalize DB URL so cwd changes never split databases."""
        if value is None:
            return value

        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text

        # Convert relative SQLite paths to absolute project-root paths.
        for prefix in (_SQLITE_ASYNC_PREFIX, _SQLITE_SYNC_PREFIX):
            if not text.startswith(prefix):
                continue
            path_part = text[len(prefix) :]
            if not path_part:
                return text
            if path_part in {":memory:", "/:memory:"}:
                return f"{prefix}:memory:"
            absolute = (
                Path(path_part).resolve()
                if path_part.startswith("/")
                else (_PROJECT_ROOT / path_part).resolve()
            )
            return f"{prefix}{absolute}"

        return text

    class Config:
        # Load project-root .env first (common workflow), then backend/.env
        # as an override if present.
        env_file = (
            str(_PROJECT_ROOT / ".env"),
            str(_BACKEND_DIR / ".env"),
        )
        env_file_encoding = "utf-8"


settings = Settings()
