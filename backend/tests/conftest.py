"""Shared fixtures for trade history sync tests."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import pytest

WEI = 10**18

USER = "0x1111111111111111111111111111111111111111"
OTHER_USER = "0x2222222222222222222222222222222222222222"

# Conditional tokens for a GNO/sDAI futarchy proposal
YES_GNO = "0xaaaa00000000000000000000000000000000a001"
NO_GNO = "0xaaaa00000000000000000000000000000000a002"
YES_SDAI = "0xbbbb00000000000000000000000000000000b001"
NO_SDAI = "0xbbbb00000000000000000000000000000000b002"
GNO = "0x9c58bacc331c9aa871afd802db6379a98e80cedb"
SDAI = "0xaf204776c7245bf4147c2612bf6e5972ee483701"
UNKNOWN_TOKEN = "0xcccc00000000000000000000000000000000c001"

PROPOSAL_ID = "0xdddd00000000000000000000000000000000d001"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSymbolClient:
    """Stands in for ``Erc20SymbolClient``; scripted per endpoint call."""

    def __init__(self, symbols=None, errors=None):
        self.symbols = dict(symbols or {})
        # Exceptions raised in order before falling back to ``symbols``
        self.errors = list(errors or [])
        self.calls: list[tuple[str, str]] = []

    async def fetch_symbol(self, endpoint_url: str, token_address: str) -> str:
        self.calls.append((endpoint_url, token_address))
        if self.errors:
            raise self.errors.pop(0)
        if token_address in self.symbols:
            return self.symbols[token_address]
        raise LookupError(f"no symbol scripted for {token_address}")


def make_row(
    event_id="1",
    tx_hash="0xabc",
    token0=YES_GNO,
    token1=YES_SDAI,
    amount0=-100 * WEI,
    amount1=250 * WEI,
    block_time="2025-01-01T00:01:40Z",
    user_address=USER,
    proposal_id=PROPOSAL_ID,
    **extra,
) -> dict:
    row = {
        "id": event_id,
        "evt_tx_hash": tx_hash,
        "token0": token0,
        "token1": token1,
        "amount0": str(amount0),
        "amount1": str(amount1),
        "evt_block_time": block_time,
        "evt_block_number": 1000,
        "user_address": user_address,
        "proposal_id": proposal_id,
        "pool_id": "0xeeee00000000000000000000000000000000e001",
    }
    row.update(extra)
    return row


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def metadata_config():
    """Current-schema market config."""
    return {
        "proposalId": PROPOSAL_ID,
        "metadata": {
            "companyTokens": {
                "base": {"wrappedCollateralTokenAddress": GNO, "tokenSymbol": "GNO"},
                "yes": {"wrappedCollateralTokenAddress": YES_GNO, "tokenSymbol": "YES_GNO"},
                "no": {"wrappedCollateralTokenAddress": NO_GNO, "tokenSymbol": "NO_GNO"},
            },
            "currencyTokens": {
                "base": {"wrappedCollateralTokenAddress": SDAI, "tokenSymbol": "sDAI"},
                "yes": {"wrappedCollateralTokenAddress": YES_SDAI, "tokenSymbol": "YES_sDAI"},
                "no": {"wrappedCollateralTokenAddress": NO_SDAI, "tokenSymbol": "NO_sDAI"},
            },
        },
    }


@pytest.fixture
def base_tokens_config():
    """Legacy BASE_TOKENS_CONFIG market config."""
    return {
        "BASE_TOKENS_CONFIG": {
            "currency": {"address": SDAI, "symbol": "sDAI", "yesAddress": YES_SDAI, "no_token": NO_SDAI},
            "company": {"address": GNO, "symbol": "GNO", "yesToken": YES_GNO, "noAddress": NO_GNO},
        }
    }


@pytest.fixture
def merge_config():
    """Legacy MERGE_CONFIG market config."""
    return {
        "MERGE_CONFIG": {
            "currencyPositions": {
                "yes": {"wrap": {"wrappedCollateralTokenAddress": YES_SDAI, "tokenSymbol": "YES_sDAI"}},
                "no": {"wrap": {"wrappedCollateralTokenAddress": NO_SDAI, "tokenSymbol": "NO_sDAI"}},
            },
            "companyPositions": {
                "yes": {"wrap": {"wrappedCollateralTokenAddress": YES_GNO, "tokenSymbol": "YES_GNO"}},
                "no": {"wrap": {"wrappedCollateralTokenAddress": NO_GNO, "tokenSymbol": "NO_GNO"}},
            },
        }
    }
