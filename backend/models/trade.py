"""Trade records as they move through the sync engine.

``RawTrade`` is what the persisted store hands us, ``EnrichedTrade`` adds
resolved symbols and pool classification, ``FormattedTrade`` is the
display-ready projection the consumer renders.  All three are immutable;
a changed trade is a new object.
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from utils.clock import parse_block_time

NOT_AVAILABLE = "N/A"

IdentityKey = tuple[str, str]


class PoolType(str, Enum):
    YES_POOL = "YES_POOL"
    NO_POOL = "NO_POOL"
    UNKNOWN_POOL = "UNKNOWN_POOL"


class MarketCategory(str, Enum):
    CONDITIONAL = "Conditional"
    PREDICTION = "Prediction"


class TradeSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class Outcome(str, Enum):
    YES = "YES"
    NO = "NO"
    UNKNOWN = NOT_AVAILABLE


class PushEventType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class PipelineState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    READY = "ready"
    ERROR = "error"


def _to_wei(value: Any, field_name: str) -> int:
    """Parse a signed integer token amount.

    Stores hand amounts back as ints, numeric strings, or occasionally in
    scientific notation; fractional parts are truncated toward zero.
    """
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be numeric, got bool")
    if isinstance(value, int):
        return value
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"{field_name} is not numeric: {value!r}") from exc
    if not parsed.is_finite():
        raise ValueError(f"{field_name} is not finite: {value!r}")
    return int(parsed)


def _required_text(row: dict, *keys: str) -> str:
    for key in keys:
        value = row.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    raise ValueError(f"trade row is missing required field {keys[0]!r}")


class RawTrade(BaseModel):
    """A single swap as recorded by the persisted trade store."""

    model_config = ConfigDict(frozen=True)

    id: str  # eventId half of the identity key
    evt_tx_hash: str
    token0: str
    token1: str
    amount0: int = 0  # signed delta of the user's token0 balance (wei)
    amount1: int = 0  # signed delta of the user's token1 balance (wei)
    evt_block_time: datetime
    evt_block_number: Optional[int] = None
    user_address: str = ""
    proposal_id: Optional[str] = None
    pool_id: Optional[str] = None

    @property
    def identity_key(self) -> IdentityKey:
        return (self.evt_tx_hash, self.id)

    @classmethod
    def from_row(cls, row: dict) -> "RawTrade":
        """Parse a ``trade_history`` row (or change-feed record).

        Raises ``ValueError`` for rows that cannot be identified or dated;
        those are permanent errors and are never retried.
        """
        if not isinstance(row, dict):
            raise ValueError(f"trade row must be a mapping, got {type(row).__name__}")

        block_number = row.get("evt_block_number")
        try:
            block_number = int(block_number) if block_number not in (None, "") else None
        except (TypeError, ValueError):
            block_number = None

        return cls(
            id=_required_text(row, "id", "event_id"),
            evt_tx_hash=_required_text(row, "evt_tx_hash", "tx_hash").lower(),
            token0=str(row.get("token0") or "").strip().lower(),
            token1=str(row.get("token1") or "").strip().lower(),
            amount0=_to_wei(row.get("amount0"), "amount0"),
            amount1=_to_wei(row.get("amount1"), "amount1"),
            evt_block_time=parse_block_time(row.get("evt_block_time")),
            evt_block_number=block_number,
            user_address=str(row.get("user_address") or "").strip().lower(),
            proposal_id=(str(row["proposal_id"]).strip() if row.get("proposal_id") else None),
            pool_id=(str(row["pool_id"]).strip().lower() if row.get("pool_id") else None),
        )

    def to_row(self) -> dict:
        """Inverse of ``from_row``; amounts are stringified to survive JSON/SQL."""
        return {
            "id": self.id,
            "evt_tx_hash": self.evt_tx_hash,
            "token0": self.token0,
            "token1": self.token1,
            "amount0": str(self.amount0),
            "amount1": str(self.amount1),
            "evt_block_time": self.evt_block_time.isoformat(),
            "evt_block_number": self.evt_block_number,
            "user_address": self.user_address,
            "proposal_id": self.proposal_id,
            "pool_id": self.pool_id,
        }


class EnrichedTrade(RawTrade):
    """RawTrade plus resolved symbols and pool/market classification."""

    token0_symbol: Optional[str] = None
    token1_symbol: Optional[str] = None
    pool_type: PoolType = PoolType.UNKNOWN_POOL
    market_category: MarketCategory = MarketCategory.CONDITIONAL


class TradeLeg(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: str = "0.000000"
    token: str = NOT_AVAILABLE


class TradeAmounts(BaseModel):
    """What the user sent into the pool and what came back out."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    sent: TradeLeg = Field(default_factory=TradeLeg, alias="in")
    received: TradeLeg = Field(default_factory=TradeLeg, alias="out")


class FormattedTrade(BaseModel):
    """Display-ready projection of an enriched trade."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    tx_hash: str
    outcome: Outcome = Outcome.UNKNOWN
    side: TradeSide
    price: Decimal = Decimal(0)
    amount: str = "0.000000"  # primary (token0) amount
    cost: str = "0.000000"  # secondary (token1) amount
    amounts: TradeAmounts = Field(default_factory=TradeAmounts)
    timestamp: datetime
    pool_type: PoolType = PoolType.UNKNOWN_POOL
    market_category: MarketCategory = MarketCategory.CONDITIONAL
    token0_symbol: str = NOT_AVAILABLE
    token1_symbol: str = NOT_AVAILABLE
    pool_id: Optional[str] = None
    # Set when the two token deltas do not look like a swap (same sign)
    irregular: bool = False

    @property
    def identity_key(self) -> IdentityKey:
        return (self.tx_hash, self.event_id)

    @property
    def price_display(self) -> str:
        return f"{self.price.quantize(Decimal('0.01'))}"


class PushEvent(BaseModel):
    """A change-feed notification for the ``trade_history`` table."""

    model_config = ConfigDict(frozen=True)

    event_type: PushEventType
    new: Optional[dict] = None
    old: Optional[dict] = None

    @classmethod
    def from_payload(cls, payload: dict) -> "PushEvent":
        """Accept both ``{eventType, new, old}`` and ``{type, record, old_record}`` shapes."""
        raw_type = str(payload.get("eventType") or payload.get("type") or "").upper()
        try:
            event_type = PushEventType(raw_type)
        except ValueError as exc:
            raise ValueError(f"unknown push event type: {raw_type!r}") from exc
        new = payload.get("new", payload.get("record"))
        old = payload.get("old", payload.get("old_record"))
        return cls(event_type=event_type, new=new or None, old=old or None)

    @property
    def record(self) -> Optional[dict]:
        """The row the event is about: ``old`` for deletes, ``new`` otherwise."""
        if self.event_type == PushEventType.DELETE:
            return self.old or self.new
        return self.new

    @property
    def identity_key(self) -> Optional[IdentityKey]:
        record = self.record
        if not record:
            return None
        tx_hash = record.get("evt_tx_hash") or record.get("tx_hash")
        event_id = record.get("id") if record.get("id") is not None else record.get("event_id")
        if not tx_hash or event_id is None:
            return None
        return (str(tx_hash).strip().lower(), str(event_id).strip())


class TradeHistoryView(BaseModel):
    """What the consumer sees for one wallet."""

    address: Optional[str] = None
    state: PipelineState = PipelineState.IDLE
    trades: list[FormattedTrade] = []
    loading: bool = False
    error: Optional[str] = None
    updated_at: Optional[datetime] = None
