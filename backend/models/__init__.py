from .trade import (
    NOT_AVAILABLE,
    EnrichedTrade,
    FormattedTrade,
    MarketCategory,
    Outcome,
    PipelineState,
    PoolType,
    PushEvent,
    PushEventType,
    RawTrade,
    TradeAmounts,
    TradeHistoryView,
    TradeLeg,
    TradeSide,
)

__all__ = [
    "NOT_AVAILABLE",
    "EnrichedTrade",
    "FormattedTrade",
    "MarketCategory",
    "Outcome",
    "PipelineState",
    "PoolType",
    "PushEvent",
    "PushEventType",
    "RawTrade",
    "TradeAmounts",
    "TradeHistoryView",
    "TradeLeg",
    "TradeSide",
]
