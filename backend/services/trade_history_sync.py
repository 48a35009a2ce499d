"""
Per-wallet trade history synchronization.

A ``TradeHistoryPipeline`` moves through ``IDLE -> FETCHING -> READY | ERROR``
for one wallet address at a time:

- connect: bulk fetch (de-duplicated through the shared ``FetchCache``),
  enrich, publish the whole batch at once;
- on success: subscribe to the store's change feed and start the poll timer;
- on failure: retry with increasing delay while the ``RetryPolicy`` allows,
  keeping whatever data was already shown;
- disconnect / address change: tear down feed and timers, clear the dataset.

Work started for a previous address is never aborted.  Each connection
gets a ``CancellationToken`` and every result is checked against it
before it is applied, so late results for an old address are dropped.

``TradeHistoryService`` owns one pipeline per wallet and the process-wide
resolver, rotation manager and fetch cache.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

from config import settings
from models.trade import (
    FormattedTrade,
    PipelineState,
    PushEvent,
    RawTrade,
    TradeHistoryView,
)
from services.fetch_cache import FetchCache, trade_fetch_cache
from services.market_config import resolve_proposal_id
from services.realtime_merge import TradeDataset
from services.token_metadata import MetadataResolver, metadata_resolver
from services.trade_enricher import enrich_batch
from services.trade_store import TradeStore, TradeSubscription, trade_store
from utils.clock import utcnow
from utils.logger import sync_logger as logger
from utils.retry import RetryPolicy
from utils.validation import normalize_address

Sleep = Callable[[float], Awaitable[None]]

DEFAULT_FETCH_POLICY = RetryPolicy(
    max_attempts=settings.TRADE_FETCH_MAX_ATTEMPTS,
    base_delay=settings.TRADE_FETCH_RETRY_BASE_DELAY,
    max_delay=settings.TRADE_FETCH_RETRY_MAX_DELAY,
)


def _exception_text(exc: BaseException) -> str:
    text = str(exc).strip()
    return text if text else repr(exc)


class CancellationToken:
    """Marks the results of one connection as current or stale."""

    __slots__ = ("address", "_cancelled")

    def __init__(self, address: str):
        self.address = address
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def __repr__(self) -> str:
        return f"CancellationToken(address={self.address!r}, cancelled={self._cancelled})"


# ==================== PIPELINE ====================


class TradeHistoryPipeline:
    def __init__(
        self,
        store: TradeStore,
        resolver: MetadataResolver,
        cache: FetchCache,
        *,
        config: Optional[dict] = None,
        proposal_id: Optional[str] = None,
        policy: RetryPolicy = DEFAULT_FETCH_POLICY,
        poll_interval: float = settings.TRADE_POLL_INTERVAL_SECONDS,
        polling_enabled: bool = settings.TRADE_POLLING_ENABLED,
        realtime_enabled: bool = settings.TRADE_REALTIME_ENABLED,
        cache_ttl: Optional[float] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self._store = store
        self._resolver = resolver
        self._cache = cache
        self._config = config
        self._proposal_id = proposal_id or resolve_proposal_id(config)
        self._policy = policy
        self._poll_interval = poll_interval
        self._polling_enabled = polling_enabled
        self._realtime_enabled = realtime_enabled
        self._cache_ttl = cache_ttl
        self._sleep = sleep

        self._address: Optional[str] = None
        self._state = PipelineState.IDLE
        self._dataset = TradeDataset()
        self._error: Optional[str] = None
        self._retries_exhausted = False
        self._token: Optional[CancellationToken] = None
        self._subscription: Optional[TradeSubscription] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._retry_task: Optional[asyncio.Task] = None
        self._updated_at = None

    @property
    def address(self) -> Optional[str]:
        return self._address

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def dataset(self) -> TradeDataset:
        return self._dataset

    def _cache_key(self, address: str) -> tuple:
        return ("trade_history", address, self._proposal_id)

    def _set_state(self, state: PipelineState) -> None:
        if state != self._state:
            logger.debug(
                "Pipeline state change",
                address=self._address,
                previous=self._state.value,
                current=state.value,
            )
        self._state = state

    async def reconfigure(
        self, config: Optional[dict] = None, proposal_id: Optional[str] = None
    ) -> bool:
        """Apply a new market config and/or proposal filter.

        A changed proposal filter tears the connection down, so the next
        ``connect`` loads the new proposal from scratch.  Returns True when
        that happened.
        """
        if config is not None:
            self._config = config
            self._resolver.prime_from_config(config)

        new_proposal_id = proposal_id or resolve_proposal_id(config) or self._proposal_id
        if new_proposal_id == self._proposal_id:
            return False

        logger.info(
            "Proposal filter changed",
            address=self._address,
            previous=self._proposal_id,
            current=new_proposal_id,
        )
        await self.disconnect()
        self._proposal_id = new_proposal_id
        return True

    # ==================== LIFECYCLE ====================

    async def connect(self, address: str) -> TradeHistoryView:
        address = normalize_address(address)

        if address == self._address and self._token is not None:
            if self._state == PipelineState.READY or len(self._dataset):
                return self.view()
            # Same wallet still loading: join the in-flight fetch
            await self._load(self._token, force_refresh=False, attempt=0)
            return self.view()

        if self._address is not None:
            logger.info("Wallet address changed", previous=self._address, current=address)
            await self.disconnect()

        self._address = address
        self._token = CancellationToken(address)
        self._dataset = TradeDataset()
        self._error = None
        self._retries_exhausted = False
        if self._config is not None:
            self._resolver.prime_from_config(self._config)

        logger.info("Trade history connect", address=address, proposal_id=self._proposal_id)
        await self._load(self._token, force_refresh=False, attempt=0)
        return self.view()

    async def disconnect(self) -> None:
        token = self._token
        if token is not None:
            token.cancel()
        self._token = None

        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

        for task in (self._poll_task, self._retry_task):
            if task is None or task.done() or task is asyncio.current_task():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._poll_task = None
        self._retry_task = None

        if self._address is not None:
            logger.info("Trade history disconnect", address=self._address)
        self._dataset.clear()
        self._address = None
        self._error = None
        self._retries_exhausted = False
        self._updated_at = None
        self._set_state(PipelineState.IDLE)

    async def refresh(self) -> TradeHistoryView:
        """Manual refresh: bypass the cache and reset the retry budget."""
        if self._token is None or self._address is None:
            return self.view()
        self._retries_exhausted = False
        await self._load(self._token, force_refresh=True, attempt=0, merge=True)
        return self.view()

    def view(self) -> TradeHistoryView:
        trades = self._dataset.trades
        retry_pending = self._retry_task is not None and not self._retry_task.done()
        show_error = self._state == PipelineState.ERROR and not trades and self._retries_exhausted
        return TradeHistoryView(
            address=self._address,
            state=self._state,
            trades=trades,
            loading=self._state == PipelineState.FETCHING or (retry_pending and not trades),
            error=self._error if show_error else None,
            updated_at=self._updated_at,
        )

    # ==================== FETCH ====================

    async def _produce(self, address: str) -> list[FormattedTrade]:
        raw = await self._store.query(address, self._proposal_id)
        return await enrich_batch(raw, self._resolver, self._config)

    async def _load(
        self,
        token: CancellationToken,
        *,
        force_refresh: bool,
        attempt: int,
        merge: bool = False,
        schedule_retry: bool = True,
    ) -> bool:
        address = token.address
        self._set_state(PipelineState.FETCHING)
        try:
            trades = await self._cache.fetch(
                self._cache_key(address),
                lambda: self._produce(address),
                ttl=self._cache_ttl,
                force_refresh=force_refresh,
            )
        except Exception as e:
            if token.cancelled:
                logger.debug("Discarding stale fetch failure", address=address)
                return False
            self._handle_failure(token, e, attempt, schedule_retry)
            return False

        if token.cancelled:
            logger.debug("Discarding stale fetch result", address=address, trades=len(trades))
            return False

        if merge or len(self._dataset):
            self._dataset.reconcile(trades)
        else:
            self._dataset.replace(trades)
        self._error = None
        self._retries_exhausted = False
        self._updated_at = utcnow()
        self._set_state(PipelineState.READY)
        logger.info("Trade history loaded", address=address, trades=len(self._dataset))

        self._ensure_subscription(token)
        self._ensure_poll_timer(token)
        return True

    def _handle_failure(
        self, token: CancellationToken, error: Exception, attempt: int, schedule_retry: bool
    ) -> None:
        self._error = _exception_text(error)
        self._set_state(PipelineState.ERROR)

        retryable = self._policy.is_retryable(error)
        has_budget = attempt + 1 < self._policy.max_attempts
        if schedule_retry and retryable and has_budget:
            delay = self._policy.delay_for(attempt)
            logger.warning(
                "Trade history fetch failed, retrying",
                address=token.address,
                attempt=attempt + 1,
                max_attempts=self._policy.max_attempts,
                delay=round(delay, 2),
                error_type=type(error).__name__,
                error=self._error,
            )
            self._schedule_retry(token, delay, attempt + 1)
            return

        if schedule_retry:
            self._retries_exhausted = True
            logger.error(
                "Trade history fetch failed",
                address=token.address,
                attempts=attempt + 1,
                retryable=retryable,
                error_type=type(error).__name__,
                error=self._error,
                kept_trades=len(self._dataset),
            )
            # The poll timer is the next automatic retry
            self._ensure_poll_timer(token)
        else:
            logger.warning(
                "Trade history poll failed",
                address=token.address,
                error_type=type(error).__name__,
                error=self._error,
                kept_trades=len(self._dataset),
            )

    def _schedule_retry(self, token: CancellationToken, delay: float, attempt: int) -> None:
        current = asyncio.current_task()
        if self._retry_task is not None and not self._retry_task.done() and self._retry_task is not current:
            return
        self._retry_task = asyncio.create_task(self._retry_after(token, delay, attempt))

    async def _retry_after(self, token: CancellationToken, delay: float, attempt: int) -> None:
        await self._sleep(delay)
        if token.cancelled:
            return
        await self._load(token, force_refresh=False, attempt=attempt)

    # ==================== POLLING ====================

    def _ensure_poll_timer(self, token: CancellationToken) -> None:
        if not self._polling_enabled or token.cancelled:
            return
        if self._poll_task is not None and not self._poll_task.done():
            return
        self._poll_task = asyncio.create_task(self._poll_loop(token))

    async def _poll_loop(self, token: CancellationToken) -> None:
        while not token.cancelled:
            await self._sleep(self._poll_interval)
            if token.cancelled:
                break
            try:
                await self._load(token, force_refresh=True, attempt=0, merge=True, schedule_retry=False)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Trade history poll error",
                    address=token.address,
                    error_type=type(e).__name__,
                    error=_exception_text(e),
                )

    # ==================== CHANGE FEED ====================

    def _ensure_subscription(self, token: CancellationToken) -> None:
        if not self._realtime_enabled or self._subscription is not None or token.cancelled:
            return

        async def _on_push(event: Any) -> None:
            await self._handle_push(token, event)

        self._subscription = self._store.subscribe(token.address, _on_push)

    async def _enrich_one(self, raw: RawTrade) -> FormattedTrade:
        formatted = await enrich_batch([raw], self._resolver, self._config)
        return formatted[0]

    async def _handle_push(self, token: CancellationToken, event: Any) -> None:
        if token.cancelled:
            return
        if isinstance(event, dict):
            try:
                event = PushEvent.from_payload(event)
            except ValueError as e:
                logger.warning("Unparseable push event dropped", error=_exception_text(e))
                return

        dataset = self._dataset
        changed = await dataset.apply_push_event(event, self._enrich_one, self._proposal_id)
        if token.cancelled or dataset is not self._dataset:
            return
        if changed:
            self._updated_at = utcnow()
            self._cache.put(self._cache_key(token.address), dataset.trades, ttl=self._cache_ttl)
            logger.debug(
                "Push event applied",
                address=token.address,
                event_type=event.event_type.value,
                trades=len(dataset),
            )

    def get_status(self) -> dict:
        return {
            "address": self._address,
            "state": self._state.value,
            "trades": len(self._dataset),
            "error": self._error,
            "retries_exhausted": self._retries_exhausted,
            "subscribed": self._subscription is not None,
            "polling": self._poll_task is not None and not self._poll_task.done(),
            "updated_at": self._updated_at.isoformat() if self._updated_at else None,
        }


# ==================== SERVICE ====================


class TradeHistoryService:
    """One pipeline per wallet over shared process-wide collaborators."""

    def __init__(
        self,
        store: TradeStore,
        resolver: MetadataResolver,
        cache: FetchCache,
        **pipeline_options: Any,
    ):
        self._store = store
        self._resolver = resolver
        self._cache = cache
        self._pipeline_options = pipeline_options
        self._pipelines: dict[str, TradeHistoryPipeline] = {}

    def get_pipeline(self, address: str) -> Optional[TradeHistoryPipeline]:
        return self._pipelines.get(normalize_address(address))

    async def connect(
        self,
        address: str,
        config: Optional[dict] = None,
        proposal_id: Optional[str] = None,
    ) -> TradeHistoryView:
        key = normalize_address(address)
        pipeline = self._pipelines.get(key)
        if pipeline is None:
            pipeline = TradeHistoryPipeline(
                self._store,
                self._resolver,
                self._cache,
                config=config,
                proposal_id=proposal_id,
                **self._pipeline_options,
            )
            self._pipelines[key] = pipeline
        elif config is not None or proposal_id is not None:
            await pipeline.reconfigure(config, proposal_id)
        return await pipeline.connect(key)

    def view(self, address: str) -> TradeHistoryView:
        key = normalize_address(address)
        pipeline = self._pipelines.get(key)
        if pipeline is None:
            return TradeHistoryView(address=key)
        return pipeline.view()

    async def refresh(self, address: str) -> TradeHistoryView:
        key = normalize_address(address)
        pipeline = self._pipelines.get(key)
        if pipeline is None:
            return await self.connect(key)
        return await pipeline.refresh()

    async def disconnect(self, address: str) -> bool:
        pipeline = self._pipelines.pop(normalize_address(address), None)
        if pipeline is None:
            return False
        await pipeline.disconnect()
        return True

    async def shutdown(self) -> None:
        for key in list(self._pipelines):
            pipeline = self._pipelines.pop(key)
            try:
                await pipeline.disconnect()
            except Exception as e:
                logger.error(
                    "Pipeline shutdown error",
                    address=key,
                    error_type=type(e).__name__,
                    error=_exception_text(e),
                )
        logger.info("Trade history service stopped")

    def get_status(self) -> dict:
        return {
            "pipelines": {key: p.get_status() for key, p in self._pipelines.items()},
            "fetch_cache": self._cache.get_stats(),
            "symbols": self._resolver.get_stats(),
        }


# ==================== SINGLETON ====================

trade_history_service = TradeHistoryService(trade_store, metadata_resolver, trade_fetch_cache)
