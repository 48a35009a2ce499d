"""
Persisted trade store plus its change feed.

``TradeStore`` is the contract the sync pipeline consumes: a bulk
``query`` and a per-wallet push ``subscribe``.  ``SqlTradeStore`` backs it
with the ``trade_history`` table and publishes INSERT / UPDATE / DELETE
events to subscribers whenever rows are written through it.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from models.database import AsyncSessionLocal, TradeHistoryRow
from models.trade import PushEvent, PushEventType, RawTrade
from utils.clock import utcnow
from utils.logger import get_logger
from utils.retry import RetryPolicy, TradeStoreUnavailable, with_retry

logger = get_logger("trade_store")

PushCallback = Callable[[PushEvent], Union[None, Awaitable[None]]]

# SQLite writers can briefly collide on the database lock
_WRITE_RETRY = RetryPolicy(max_attempts=3, base_delay=0.2, max_delay=2.0)


def _exception_text(exc: BaseException) -> str:
    text = str(exc).strip()
    return text if text else repr(exc)


@dataclass(eq=False)
class TradeSubscription:
    """Handle for one change-feed subscription; ``close()`` is idempotent."""

    user_address: str
    callback: PushCallback
    _on_close: Optional[Callable[["TradeSubscription"], None]] = field(default=None, repr=False)
    active: bool = True

    def close(self) -> None:
        if not self.active:
            return
        self.active = False
        if self._on_close is not None:
            self._on_close(self)


class TradeStore(ABC):
    """Source of persisted trades for a wallet."""

    @abstractmethod
    async def query(self, user_address: str, proposal_id: Optional[str] = None) -> list[RawTrade]:
        """All trades for ``user_address``, newest first."""
        raise NotImplementedError

    @abstractmethod
    def subscribe(self, user_address: str, callback: PushCallback) -> TradeSubscription:
        """Deliver change events for ``user_address`` to ``callback``."""
        raise NotImplementedError


class SqlTradeStore(TradeStore):
    def __init__(self, session_factory=AsyncSessionLocal):
        self._session_factory = session_factory
        self._subscriptions: list[TradeSubscription] = []

    # ==================== READS ====================

    async def query(self, user_address: str, proposal_id: Optional[str] = None) -> list[RawTrade]:
        address = str(user_address or "").strip().lower()
        stmt = select(TradeHistoryRow).where(TradeHistoryRow.user_address == address)
        if proposal_id:
            stmt = stmt.where(TradeHistoryRow.proposal_id == proposal_id)
        stmt = stmt.order_by(TradeHistoryRow.evt_block_time.desc())

        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except (SQLAlchemyError, OSError) as e:
            raise TradeStoreUnavailable(f"trade_history query failed: {_exception_text(e)}") from e

        trades: list[RawTrade] = []
        for row in rows:
            try:
                trades.append(RawTrade.from_row(row.to_dict()))
            except ValueError as e:
                logger.warning(
                    "Skipping malformed trade_history row",
                    row_id=row.id,
                    error=_exception_text(e),
                )
        return trades

    # ==================== WRITES ====================

    @with_retry(_WRITE_RETRY)
    async def upsert(self, row: dict[str, Any]) -> PushEvent:
        """Insert or update one trade and notify subscribers."""
        trade = RawTrade.from_row(row)
        values = trade.to_row()
        values["evt_block_time"] = trade.evt_block_time

        try:
            async with self._session_factory() as session:
                existing = await session.get(
                    TradeHistoryRow, {"evt_tx_hash": trade.evt_tx_hash, "id": trade.id}
                )
                if existing is None:
                    session.add(TradeHistoryRow(**values, updated_at=utcnow()))
                    event = PushEvent(event_type=PushEventType.INSERT, new=trade.to_row())
                else:
                    old = RawTrade.from_row(existing.to_dict()).to_row()
                    for column, value in values.items():
                        setattr(existing, column, value)
                    existing.updated_at = utcnow()
                    event = PushEvent(event_type=PushEventType.UPDATE, new=trade.to_row(), old=old)
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            raise TradeStoreUnavailable(f"trade_history upsert failed: {_exception_text(e)}") from e

        await self._publish(trade.user_address, event)
        return event

    @with_retry(_WRITE_RETRY)
    async def delete(self, tx_hash: str, trade_id: str) -> Optional[PushEvent]:
        """Delete the trade ``(tx_hash, trade_id)``; returns the DELETE event or ``None`` if absent."""
        key = {"evt_tx_hash": str(tx_hash or "").strip().lower(), "id": str(trade_id).strip()}
        try:
            async with self._session_factory() as session:
                existing = await session.get(TradeHistoryRow, key)
                if existing is None:
                    return None
                old = existing.to_dict()
                await session.delete(existing)
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            raise TradeStoreUnavailable(f"trade_history delete failed: {_exception_text(e)}") from e

        old["evt_block_time"] = old["evt_block_time"].isoformat() if old.get("evt_block_time") else None
        event = PushEvent(event_type=PushEventType.DELETE, old=old)
        await self._publish(str(old.get("user_address") or ""), event)
        return event

    # ==================== CHANGE FEED ====================

    def subscribe(self, user_address: str, callback: PushCallback) -> TradeSubscription:
        subscription = TradeSubscription(
            user_address=str(user_address or "").strip().lower(),
            callback=callback,
            _on_close=self._unsubscribe,
        )
        self._subscriptions.append(subscription)
        logger.debug("Trade feed subscribed", address=subscription.user_address)
        return subscription

    def _unsubscribe(self, subscription: TradeSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
            logger.debug("Trade feed unsubscribed", address=subscription.user_address)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def _publish(self, user_address: str, event: PushEvent) -> None:
        """Invoke matching callbacks; sync and async callbacks are both supported."""
        address = user_address.strip().lower()
        for subscription in list(self._subscriptions):
            if not subscription.active or subscription.user_address != address:
                continue
            try:
                result = subscription.callback(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(
                    "Trade feed callback error",
                    error_type=type(e).__name__,
                    error=_exception_text(e),
                    callback=getattr(subscription.callback, "__name__", str(subscription.callback)),
                )


# ==================== SINGLETON ====================

trade_store = SqlTradeStore()
