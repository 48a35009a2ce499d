"""
In-memory trade dataset kept current by change-feed events.

Every mutation is keyed on ``(tx_hash, event_id)`` and is idempotent:
replaying an INSERT, UPDATE or DELETE any number of times leaves the same
dataset.  Order is always newest-first by block time, regardless of the
order events arrive in.
"""

from typing import Awaitable, Callable, Iterable, Optional

from models.trade import FormattedTrade, IdentityKey, PushEvent, PushEventType, RawTrade
from utils.logger import get_logger

logger = get_logger("realtime_merge")

Enrich = Callable[[RawTrade], Awaitable[FormattedTrade]]


def _exception_text(exc: BaseException) -> str:
    text = str(exc).strip()
    return text if text else repr(exc)


class TradeDataset:
    """Newest-first list of formatted trades with an identity index."""

    def __init__(self, trades: Iterable[FormattedTrade] = ()):
        self._trades: list[FormattedTrade] = []
        self._keys: set[IdentityKey] = set()
        self.replace(trades)

    def __len__(self) -> int:
        return len(self._trades)

    def __contains__(self, key: IdentityKey) -> bool:
        return key in self._keys

    @property
    def trades(self) -> list[FormattedTrade]:
        return list(self._trades)

    def _sort(self) -> None:
        self._trades.sort(key=lambda t: t.timestamp, reverse=True)

    # ==================== MUTATIONS ====================

    def insert(self, trade: FormattedTrade) -> bool:
        """Insert at head unless the identity key is already present."""
        key = trade.identity_key
        if key in self._keys:
            return False
        self._trades.insert(0, trade)
        self._keys.add(key)
        self._sort()
        return True

    def update(self, trade: FormattedTrade) -> bool:
        key = trade.identity_key
        if key not in self._keys:
            return False
        for i, existing in enumerate(self._trades):
            if existing.identity_key == key:
                self._trades[i] = trade
                break
        # Block time can change on a reorg
        self._sort()
        return True

    def remove(self, key: IdentityKey) -> bool:
        if key not in self._keys:
            return False
        self._trades = [t for t in self._trades if t.identity_key != key]
        self._keys.discard(key)
        return True

    def replace(self, trades: Iterable[FormattedTrade]) -> None:
        """Swap in a new dataset; duplicate keys keep their first occurrence."""
        deduped: list[FormattedTrade] = []
        keys: set[IdentityKey] = set()
        for trade in trades:
            if trade.identity_key in keys:
                continue
            keys.add(trade.identity_key)
            deduped.append(trade)
        self._trades = deduped
        self._keys = keys
        self._sort()

    def clear(self) -> None:
        self._trades = []
        self._keys = set()

    def reconcile(self, bulk: Iterable[FormattedTrade]) -> int:
        """Fold a full snapshot into the dataset.

        A snapshot larger than what we hold is authoritative and replaces it
        outright.  Otherwise only unseen keys are added, so records the
        snapshot omits (e.g. pushed rows the store has not served yet) are
        kept.  Returns the number of records added.
        """
        snapshot = list(bulk)
        if len(snapshot) > len(self._trades):
            before = len(self._trades)
            self.replace(snapshot)
            logger.debug("Snapshot replaced dataset", previous=before, current=len(self._trades))
            return max(0, len(self._trades) - before)

        added = 0
        for trade in snapshot:
            key = trade.identity_key
            if key in self._keys:
                continue
            self._trades.append(trade)
            self._keys.add(key)
            added += 1
        if added:
            self._sort()
            logger.debug("Snapshot merged into dataset", added=added, current=len(self._trades))
        return added

    # ==================== CHANGE FEED ====================

    async def apply_push_event(
        self,
        event: PushEvent,
        enrich: Enrich,
        proposal_id: Optional[str] = None,
    ) -> bool:
        """Apply one change-feed event; returns True if the dataset changed.

        Malformed records are logged and dropped.  Events for a different
        proposal are ignored when ``proposal_id`` is given.
        """
        key = event.identity_key
        if key is None:
            logger.warning("Push event without identity key ignored", event_type=event.event_type.value)
            return False

        record = event.record or {}
        record_proposal = record.get("proposal_id")
        if proposal_id and record_proposal and str(record_proposal).strip() != proposal_id:
            return False

        if event.event_type == PushEventType.DELETE:
            removed = self.remove(key)
            if removed:
                logger.debug("Trade removed by push event", tx_hash=key[0], event_id=key[1])
            return removed

        if event.event_type == PushEventType.INSERT and key in self._keys:
            logger.debug("Duplicate push insert ignored", tx_hash=key[0], event_id=key[1])
            return False
        if event.event_type == PushEventType.UPDATE and key not in self._keys:
            return False

        try:
            raw = RawTrade.from_row(record)
        except ValueError as e:
            logger.warning(
                "Malformed push event record dropped",
                event_type=event.event_type.value,
                error=_exception_text(e),
            )
            return False

        formatted = await enrich(raw)

        # Membership can change while enrichment was suspended
        if event.event_type == PushEventType.INSERT:
            return self.insert(formatted)
        return self.update(formatted)
