"""
Raw trade -> enriched trade -> display-ready trade.

Conditional tokens follow the ``PREFIX_BASE`` naming convention
(``YES_GNO``, ``NO_sDAI``).  token0 is the primary token: its signed
balance delta decides buy/sell and its prefix decides the outcome.
All arithmetic is ``Decimal``; on-chain amounts carry 18 implied
fractional digits.
"""

from decimal import ROUND_HALF_UP, Decimal, localcontext
from typing import Iterable, Optional

from config import settings
from models.trade import (
    NOT_AVAILABLE,
    EnrichedTrade,
    FormattedTrade,
    MarketCategory,
    Outcome,
    PoolType,
    RawTrade,
    TradeAmounts,
    TradeLeg,
    TradeSide,
)
from services.market_config import resolve_base_currency_symbol
from services.token_metadata import MetadataResolver
from utils.logger import get_logger

logger = get_logger("trade_enricher")

TOKEN_DECIMALS = 18
AMOUNT_QUANTUM = Decimal("0.000001")
PRICE_QUANTUM = Decimal(10) ** -TOKEN_DECIMALS
_PRECISION = 96  # any uint256 / uint256 ratio plus 18 fractional digits

_OUTCOME_PREFIXES = {"YES": Outcome.YES, "NO": Outcome.NO}


# ==================== SYMBOL PARSING ====================


def parse_symbol(symbol: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """Split ``YES_sDAI`` into ``("YES", "sDAI")``; unprefixed symbols give ``(None, symbol)``."""
    if not symbol:
        return None, None
    head, sep, tail = symbol.partition("_")
    if sep and tail and head.upper() in _OUTCOME_PREFIXES:
        return head.upper(), tail
    return None, symbol


def format_units(amount: int, decimals: int = TOKEN_DECIMALS) -> str:
    """Absolute token amount rendered with six fractional digits."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        value = Decimal(abs(amount)).scaleb(-decimals)
        return f"{value.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP):f}"


def compute_price(amount0: int, amount1: int) -> Decimal:
    """``|amount1| / |amount0|``; both share 18 decimals so the scale cancels.

    Defined as 0 when the primary amount is 0.
    """
    if amount0 == 0:
        return Decimal(0)
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        ratio = Decimal(abs(amount1)) / Decimal(abs(amount0))
        return ratio.quantize(PRICE_QUANTUM, rounding=ROUND_HALF_UP)


# ==================== CLASSIFICATION ====================


def _same_symbol(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.casefold() == b.casefold()


def classify(
    raw: RawTrade,
    symbol_map: dict[str, Optional[str]],
    base_currency_symbol: str = settings.BASE_CURRENCY_SYMBOL,
) -> EnrichedTrade:
    symbol0 = symbol_map.get(raw.token0)
    symbol1 = symbol_map.get(raw.token1)
    prefix0, _ = parse_symbol(symbol0)
    prefix1, _ = parse_symbol(symbol1)

    if "YES" in (prefix0, prefix1):
        pool_type = PoolType.YES_POOL
    elif "NO" in (prefix0, prefix1):
        pool_type = PoolType.NO_POOL
    else:
        pool_type = PoolType.UNKNOWN_POOL

    # Prediction pools pair a conditional token with the plain base currency
    if prefix0 and not prefix1 and _same_symbol(symbol1, base_currency_symbol):
        category = MarketCategory.PREDICTION
    elif prefix1 and not prefix0 and _same_symbol(symbol0, base_currency_symbol):
        category = MarketCategory.PREDICTION
    else:
        category = MarketCategory.CONDITIONAL

    return EnrichedTrade(
        **raw.model_dump(),
        token0_symbol=symbol0,
        token1_symbol=symbol1,
        pool_type=pool_type,
        market_category=category,
    )


def _legs(trade: EnrichedTrade) -> tuple[TradeAmounts, bool]:
    """Build sent/received legs from each token's own delta.

    A swap has exactly one negative and one positive delta.  Anything else
    (both negative, both positive, zeros) is flagged irregular; legs are
    filled first-come and never overwritten.
    """
    sent: Optional[TradeLeg] = None
    received: Optional[TradeLeg] = None
    for amount, symbol in (
        (trade.amount0, trade.token0_symbol),
        (trade.amount1, trade.token1_symbol),
    ):
        leg = TradeLeg(value=format_units(amount), token=symbol or NOT_AVAILABLE)
        if amount < 0 and sent is None:
            sent = leg
        elif amount > 0 and received is None:
            received = leg

    irregular = not (
        (trade.amount0 < 0 < trade.amount1) or (trade.amount1 < 0 < trade.amount0)
    )
    return (
        TradeAmounts(sent=sent or TradeLeg(), received=received or TradeLeg()),
        irregular,
    )


def format_trade(trade: EnrichedTrade) -> FormattedTrade:
    prefix0, _ = parse_symbol(trade.token0_symbol)
    amounts, irregular = _legs(trade)
    if irregular:
        logger.warning(
            "Irregular trade deltas, legs may not describe a swap",
            tx_hash=trade.evt_tx_hash,
            event_id=trade.id,
            amount0=str(trade.amount0),
            amount1=str(trade.amount1),
        )

    return FormattedTrade(
        event_id=trade.id,
        tx_hash=trade.evt_tx_hash,
        outcome=_OUTCOME_PREFIXES.get(prefix0, Outcome.UNKNOWN),
        side=TradeSide.SELL if trade.amount0 < 0 else TradeSide.BUY,
        price=compute_price(trade.amount0, trade.amount1),
        amount=format_units(trade.amount0),
        cost=format_units(trade.amount1),
        amounts=amounts,
        timestamp=trade.evt_block_time,
        pool_type=trade.pool_type,
        market_category=trade.market_category,
        token0_symbol=trade.token0_symbol or NOT_AVAILABLE,
        token1_symbol=trade.token1_symbol or NOT_AVAILABLE,
        pool_id=trade.pool_id,
        irregular=irregular,
    )


# ==================== BATCH ====================


async def enrich_batch(
    raw_trades: Iterable[RawTrade],
    resolver: MetadataResolver,
    config: Optional[dict] = None,
) -> list[FormattedTrade]:
    """Resolve every distinct token once, then classify and format the batch.

    Returns newest-first.  Nothing is published until the whole batch is
    formatted.
    """
    trades = list(raw_trades)
    if not trades:
        return []

    addresses = {t.token0 for t in trades} | {t.token1 for t in trades}
    symbol_map = await resolver.batch_resolve(sorted(a for a in addresses if a), config)
    base_currency = resolve_base_currency_symbol(config, settings.BASE_CURRENCY_SYMBOL)

    formatted = [format_trade(classify(t, symbol_map, base_currency)) for t in trades]
    formatted.sort(key=lambda t: t.timestamp, reverse=True)
    return formatted
