"""
Token address -> symbol resolution.

Lookup order for every address:

1. the process-wide symbol cache (positive *and* negative entries),
2. the market config, via the ordered schema extractors in
   ``services.market_config``,
3. ``symbol()`` over JSON-RPC, rotating endpoints on failure, bounded by a
   ``RetryPolicy``.

A lookup that exhausts its attempts is cached as ``UNRESOLVED`` so a broken
token costs at most one bounded round of RPC calls per process.  Nothing in
here raises to the caller: a failed lookup is ``None`` and the enricher
renders it as ``N/A``.
"""

import asyncio
from typing import Iterable, Optional, Union

from config import settings
from services.endpoint_rotation import EndpointRotationManager, endpoint_rotation
from services.erc20_rpc import Erc20SymbolClient, TokenMetadataError
from services.market_config import extract_token_symbols, lookup_symbol
from utils.logger import get_logger
from utils.retry import RetryPolicy
from utils.validation import is_eth_address

logger = get_logger("token_metadata")


class _Unresolved:
    """Negative cache marker: the address was tried and has no symbol."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "UNRESOLVED"

    def __bool__(self) -> bool:
        return False


UNRESOLVED = _Unresolved()

CachedSymbol = Union[str, _Unresolved]

# Tokens every Gnosis futarchy market trades against; seeded so they never cost an RPC call
COMMON_TOKENS: dict[str, str] = {
    "0xe91d153e0b41518a2ce8dd3d7944fa863463a97d": "WXDAI",
    "0x9c58bacc331c9aa871afd802db6379a98e80cedb": "GNO",
    "0xaf204776c7245bf4147c2612bf6e5972ee483701": "sDAI",
}

# Endpoint rotation already spaces out retries, so symbol attempts go back-to-back
DEFAULT_SYMBOL_POLICY = RetryPolicy(
    max_attempts=settings.SYMBOL_MAX_ATTEMPTS,
    base_delay=0.0,
    jitter=False,
)


def _exception_text(exc: BaseException) -> str:
    text = str(exc).strip()
    return text if text else repr(exc)


class MetadataResolver:
    """Resolves ERC-20 symbols with config-first precedence and negative caching."""

    def __init__(
        self,
        rotation: EndpointRotationManager,
        rpc_client: Erc20SymbolClient,
        policy: RetryPolicy = DEFAULT_SYMBOL_POLICY,
        seed: Optional[dict[str, str]] = None,
    ):
        self._rotation = rotation
        self._rpc = rpc_client
        self._policy = policy
        self._seed = {k.lower(): v for k, v in (COMMON_TOKENS if seed is None else seed).items()}
        self._cache: dict[str, CachedSymbol] = dict(self._seed)
        self._stats = {
            "cache_hits": 0,
            "config_hits": 0,
            "rpc_calls": 0,
            "rpc_failures": 0,
            "unresolved": 0,
        }

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def cached(self, address: str) -> Optional[CachedSymbol]:
        """Raw cache entry (symbol, ``UNRESOLVED`` or ``None`` when never seen)."""
        return self._cache.get(str(address or "").strip().lower())

    def prime_from_config(self, config: Optional[dict]) -> int:
        """Seed the cache with every token ``config`` names.

        Config is authoritative, so it also replaces earlier negative
        entries.  Returns the number of entries written.
        """
        written = 0
        for address, symbol in extract_token_symbols(config).items():
            existing = self._cache.get(address)
            if existing is None or existing is UNRESOLVED:
                self._cache[address] = symbol
                written += 1
        if written:
            logger.debug("Primed symbol cache from market config", tokens=written)
        return written

    async def resolve_symbol(
        self, address: str, config: Optional[dict] = None
    ) -> Optional[str]:
        key = str(address or "").strip().lower()

        cached = self._cache.get(key)
        if cached is not None:
            self._stats["cache_hits"] += 1
            return None if cached is UNRESOLVED else cached

        if not is_eth_address(key):
            logger.warning("Malformed token address, caching as unresolved", token=address)
            self._mark_unresolved(key)
            return None

        if config is not None:
            hit = lookup_symbol(config, key)
            if hit is not None:
                schema, symbol = hit
                self._cache[key] = symbol
                self._stats["config_hits"] += 1
                logger.debug("Symbol resolved from config", token=key, schema=schema.value, symbol=symbol)
                return symbol

        symbol = await self._resolve_via_rpc(key)
        if symbol is None:
            self._mark_unresolved(key)
            return None
        self._cache[key] = symbol
        return symbol

    async def batch_resolve(
        self, addresses: Iterable[str], config: Optional[dict] = None
    ) -> dict[str, Optional[str]]:
        """Resolve every unique address concurrently; never raises for a single failure."""
        unique: list[str] = []
        for address in addresses:
            key = str(address or "").strip().lower()
            if key and key not in unique:
                unique.append(key)
        if not unique:
            return {}

        before = dict(self._stats)
        results = await asyncio.gather(
            *(self.resolve_symbol(key, config) for key in unique),
            return_exceptions=True,
        )

        resolved: dict[str, Optional[str]] = {}
        for key, result in zip(unique, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.error(
                    "Unexpected symbol resolution error",
                    token=key,
                    error_type=type(result).__name__,
                    error=_exception_text(result),
                )
                resolved[key] = None
            else:
                resolved[key] = result

        logger.debug(
            "Batch symbol resolution complete",
            tokens=len(unique),
            unresolved=sum(1 for v in resolved.values() if v is None),
            **{k: self._stats[k] - before.get(k, 0) for k in ("cache_hits", "config_hits", "rpc_calls")},
        )
        return resolved

    async def _resolve_via_rpc(self, token: str) -> Optional[str]:
        for attempt in range(self._policy.max_attempts):
            endpoint = self._rotation.select()
            self._stats["rpc_calls"] += 1
            try:
                symbol = await self._rpc.fetch_symbol(endpoint.url, token)
            except Exception as e:
                self._stats["rpc_failures"] += 1
                self._rotation.record_failure(endpoint, e)
                # Only a contract-level answer is final; any endpoint fault moves on
                retryable = not isinstance(e, TokenMetadataError)
                logger.debug(
                    "Symbol RPC attempt failed",
                    token=token,
                    endpoint=endpoint.url,
                    attempt=attempt + 1,
                    max_attempts=self._policy.max_attempts,
                    retryable=retryable,
                    error_type=type(e).__name__,
                    error=_exception_text(e),
                )
                if not retryable:
                    return None
                if attempt < self._policy.max_attempts - 1:
                    delay = self._policy.delay_for(attempt)
                    if delay > 0:
                        await asyncio.sleep(delay)
                continue

            self._rotation.record_success(endpoint)
            return symbol

        return None

    def _mark_unresolved(self, key: str) -> None:
        self._cache[key] = UNRESOLVED
        self._stats["unresolved"] += 1
        logger.info("Token symbol unresolved, cached negative result", token=key)

    def invalidate(self, address: str) -> None:
        self._cache.pop(str(address or "").strip().lower(), None)

    def clear(self) -> None:
        """Drop every cached symbol except the well-known seed tokens."""
        self._cache = dict(self._seed)

    def get_stats(self) -> dict:
        return {
            **self._stats,
            "cached_symbols": sum(1 for v in self._cache.values() if v is not UNRESOLVED),
            "cached_unresolved": sum(1 for v in self._cache.values() if v is UNRESOLVED),
        }


# ==================== SINGLETON ====================

metadata_resolver = MetadataResolver(endpoint_rotation, Erc20SymbolClient())
