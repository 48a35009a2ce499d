import sys
from decimal import Decimal
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import (
    NO_GNO,
    NO_SDAI,
    SDAI,
    UNKNOWN_TOKEN,
    WEI,
    YES_GNO,
    YES_SDAI,
    FakeSymbolClient,
    make_row,
)
from models.trade import MarketCategory, Outcome, PoolType, RawTrade, TradeSide
from services.endpoint_rotation import EndpointRotationManager
from services.token_metadata import MetadataResolver
from services.trade_enricher import (
    classify,
    compute_price,
    enrich_batch,
    format_trade,
    format_units,
    parse_symbol,
)
from utils.retry import RetryPolicy

SYMBOLS = {
    YES_GNO: "YES_GNO",
    NO_GNO: "NO_GNO",
    YES_SDAI: "YES_sDAI",
    NO_SDAI: "NO_sDAI",
    SDAI: "sDAI",
}


def _format(**row_kwargs):
    raw = RawTrade.from_row(make_row(**row_kwargs))
    return format_trade(classify(raw, SYMBOLS, "sDAI"))


@pytest.mark.parametrize(
    "symbol, expected",
    [
        ("YES_sDAI", ("YES", "sDAI")),
        ("no_GNO", ("NO", "GNO")),
        ("sDAI", (None, "sDAI")),
        ("WRAPPED_ETH", (None, "WRAPPED_ETH")),
        ("YES_", (None, "YES_")),
        (None, (None, None)),
    ],
)
def test_parse_symbol(symbol, expected):
    assert parse_symbol(symbol) == expected


def test_price_is_exact_fixed_point():
    trade = _format(amount0=100 * WEI, amount1=250 * WEI)
    assert trade.price == Decimal("2.50")
    assert trade.price_display == "2.50"


def test_price_has_no_float_drift():
    assert compute_price(3, 1).quantize(Decimal("0.0000000001")) == Decimal("0.3333333333")
    assert compute_price(10 * WEI, 1 * WEI) == Decimal("0.1")
    assert compute_price(-(7 * WEI), 21 * WEI) == Decimal(3)


def test_price_is_quantized_to_eighteen_fractional_digits():
    assert compute_price(3, 1) == Decimal("0.333333333333333333")
    assert compute_price(3, 2) == Decimal("0.666666666666666667")
    assert compute_price(3, 1).as_tuple().exponent == -18
    assert compute_price(1, 2**255) == Decimal(2**255)


def test_zero_primary_amount_gives_zero_price():
    assert compute_price(0, 5 * WEI) == 0
    assert _format(amount0=0, amount1=5 * WEI).price == 0


def test_side_from_primary_delta():
    assert _format(amount0=-WEI, amount1=2 * WEI).side == TradeSide.SELL
    assert _format(amount0=WEI, amount1=-2 * WEI).side == TradeSide.BUY
    assert _format(amount0=0, amount1=-2 * WEI).side == TradeSide.BUY


def test_outcome_from_primary_prefix():
    assert _format(token0=YES_GNO, token1=YES_SDAI).outcome == Outcome.YES
    assert _format(token0=NO_GNO, token1=NO_SDAI).outcome == Outcome.NO
    assert _format(token0=SDAI, token1=YES_GNO).outcome == Outcome.UNKNOWN


def test_pool_type_classification():
    assert _format(token0=YES_GNO, token1=YES_SDAI).pool_type == PoolType.YES_POOL
    assert _format(token0=SDAI, token1=NO_GNO).pool_type == PoolType.NO_POOL
    assert _format(token0=SDAI, token1=UNKNOWN_TOKEN).pool_type == PoolType.UNKNOWN_POOL


def test_market_category():
    assert _format(token0=YES_GNO, token1=SDAI).market_category == MarketCategory.PREDICTION
    assert _format(token0=SDAI, token1=NO_GNO).market_category == MarketCategory.PREDICTION
    assert _format(token0=YES_GNO, token1=YES_SDAI).market_category == MarketCategory.CONDITIONAL
    assert _format(token0=YES_GNO, token1=UNKNOWN_TOKEN).market_category == MarketCategory.CONDITIONAL


def test_base_currency_comes_from_argument():
    raw = RawTrade.from_row(make_row(token0=YES_GNO, token1=SDAI))
    assert classify(raw, SYMBOLS, "WXDAI").market_category == MarketCategory.CONDITIONAL


def test_legs_follow_each_token_delta():
    trade = _format(token0=YES_GNO, token1=YES_SDAI, amount0=-100 * WEI, amount1=250 * WEI)

    assert trade.amounts.sent.token == "YES_GNO"
    assert trade.amounts.sent.value == "100.000000"
    assert trade.amounts.received.token == "YES_sDAI"
    assert trade.amounts.received.value == "250.000000"
    assert trade.amount == "100.000000"
    assert trade.cost == "250.000000"
    assert trade.irregular is False


def test_legs_when_primary_token_is_received():
    trade = _format(token0=YES_GNO, token1=YES_SDAI, amount0=40 * WEI, amount1=-10 * WEI)

    assert trade.side == TradeSide.BUY
    assert trade.amounts.sent.token == "YES_sDAI"
    assert trade.amounts.received.token == "YES_GNO"


def test_same_sign_deltas_are_flagged_not_mislabelled():
    trade = _format(amount0=-5 * WEI, amount1=-3 * WEI)

    assert trade.irregular is True
    assert trade.amounts.sent.token == "YES_GNO"
    assert trade.amounts.sent.value == "5.000000"
    # Second negative leg must not overwrite the first, and there is no received leg
    assert trade.amounts.received.token == "N/A"
    assert trade.amounts.received.value == "0.000000"


def test_unresolved_symbols_render_as_not_available():
    trade = _format(token0=UNKNOWN_TOKEN, token1=SDAI)

    assert trade.token0_symbol == "N/A"
    assert trade.token1_symbol == "sDAI"
    assert trade.outcome == Outcome.UNKNOWN
    assert trade.amounts.sent.token == "N/A"


def test_format_units_six_decimals():
    assert format_units(1_234_567_890_000_000_000) == "1.234568"
    assert format_units(-1) == "0.000000"
    assert format_units(0) == "0.000000"
    assert format_units(10**30) == "1000000000000.000000"


@pytest.mark.asyncio
async def test_enrich_batch_resolves_each_token_once_and_sorts_newest_first(fake_clock, metadata_config):
    client = FakeSymbolClient(symbols={UNKNOWN_TOKEN: "PNK"})
    rotation = EndpointRotationManager(["https://rpc.example"], clock=fake_clock)
    resolver = MetadataResolver(rotation, client, policy=RetryPolicy(max_attempts=1, base_delay=0.0))
    raws = [
        RawTrade.from_row(make_row(event_id="1", block_time=50, token1=UNKNOWN_TOKEN)),
        RawTrade.from_row(make_row(event_id="2", block_time=100, token1=UNKNOWN_TOKEN)),
        RawTrade.from_row(make_row(event_id="3", block_time=75)),
    ]

    trades = await enrich_batch(raws, resolver, metadata_config)

    assert [t.event_id for t in trades] == ["2", "3", "1"]
    assert client.calls == [("https://rpc.example", UNKNOWN_TOKEN)]
    assert trades[0].token1_symbol == "PNK"
    assert trades[1].token1_symbol == "YES_sDAI"


@pytest.mark.asyncio
async def test_enrich_batch_empty(fake_clock):
    rotation = EndpointRotationManager(["https://rpc.example"], clock=fake_clock)
    resolver = MetadataResolver(rotation, FakeSymbolClient())
    assert await enrich_batch([], resolver) == []
