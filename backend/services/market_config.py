"""
Token-symbol extraction from futarchy market configuration.

Market configs have changed shape over time.  Each historical shape is a
``ConfigSchema`` variant with its own extractor; extractors are tried in
``EXTRACTORS`` order (current schema first) and the first one that knows an
address wins.

Current (``METADATA``)::

    {"metadata": {"companyTokens": {"base": {...}, "yes": {...}, "no": {...}},
                  "currencyTokens": {...}}}

    where each leaf is {"wrappedCollateralTokenAddress": "0x..", "tokenSymbol": "YES_GNO"}

Legacy (``BASE_TOKENS``)::

    {"BASE_TOKENS_CONFIG": {"currency": {"address": "0x..", "symbol": "sDAI",
                                         "yesAddress": "0x..", "noAddress": "0x.."},
                            "company": {...}}}

Legacy (``MERGE_CONFIG``)::

    {"MERGE_CONFIG": {"currencyPositions": {"yes": {"wrap": {"wrappedCollateralTokenAddress": ..,
                                                            "tokenSymbol": ..}},
                                            "no": {...}},
                      "companyPositions": {...}}}
"""

from enum import Enum
from typing import Any, Callable, Optional

from utils.validation import is_eth_address

# ==================== SCHEMA VARIANTS ====================


class ConfigSchema(str, Enum):
    METADATA = "metadata"
    BASE_TOKENS = "base_tokens"
    MERGE_CONFIG = "merge_config"


SymbolTable = dict[str, str]  # lower-cased address -> symbol

_SIDES = ("company", "currency")
_OUTCOMES = ("yes", "no")

# Keys the legacy BASE_TOKENS_CONFIG shape has used for conditional token addresses
_LEGACY_OUTCOME_KEYS = {
    "yes": ("yesToken", "yesAddress", "yes_token", "yes_address"),
    "no": ("noToken", "noAddress", "no_token", "no_address"),
}


def _dig(obj: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def _add(table: SymbolTable, address: Any, symbol: Any) -> None:
    if not is_eth_address(address):
        return
    text = str(symbol or "").strip()
    if not text:
        return
    table.setdefault(address.strip().lower(), text)


# ==================== EXTRACTORS ====================


def _extract_metadata(config: dict) -> SymbolTable:
    metadata = config.get("metadata") if isinstance(config.get("metadata"), dict) else config
    table: SymbolTable = {}
    for group in ("companyTokens", "currencyTokens"):
        for slot in ("base", *_OUTCOMES):
            leaf = _dig(metadata, group, slot)
            if isinstance(leaf, dict):
                _add(table, leaf.get("wrappedCollateralTokenAddress"), leaf.get("tokenSymbol"))
    return table


def _extract_base_tokens(config: dict) -> SymbolTable:
    base_tokens = config.get("BASE_TOKENS_CONFIG")
    table: SymbolTable = {}
    if not isinstance(base_tokens, dict):
        return table
    for side in _SIDES:
        entry = base_tokens.get(side)
        if not isinstance(entry, dict):
            continue
        symbol = str(entry.get("symbol") or "").strip()
        _add(table, entry.get("address"), symbol)
        if not symbol:
            continue
        for outcome, keys in _LEGACY_OUTCOME_KEYS.items():
            for key in keys:
                if entry.get(key):
                    _add(table, entry.get(key), f"{outcome.upper()}_{symbol}")
                    break
    return table


def _extract_merge_config(config: dict) -> SymbolTable:
    merge_config = config.get("MERGE_CONFIG")
    table: SymbolTable = {}
    if not isinstance(merge_config, dict):
        return table
    for side in _SIDES:
        for outcome in _OUTCOMES:
            wrap = _dig(merge_config, f"{side}Positions", outcome, "wrap")
            if isinstance(wrap, dict):
                _add(table, wrap.get("wrappedCollateralTokenAddress"), wrap.get("tokenSymbol"))
    return table


EXTRACTORS: tuple[tuple[ConfigSchema, Callable[[dict], SymbolTable]], ...] = (
    (ConfigSchema.METADATA, _extract_metadata),
    (ConfigSchema.BASE_TOKENS, _extract_base_tokens),
    (ConfigSchema.MERGE_CONFIG, _extract_merge_config),
)


# ==================== LOOKUPS ====================


def lookup_symbol(
    config: Optional[dict], address: str
) -> Optional[tuple[ConfigSchema, str]]:
    """Return ``(schema, symbol)`` from the first extractor that knows ``address``."""
    if not isinstance(config, dict) or not is_eth_address(address):
        return None
    key = address.strip().lower()
    for schema, extractor in EXTRACTORS:
        symbol = extractor(config).get(key)
        if symbol:
            return schema, symbol
    return None


def detect_schemas(config: Optional[dict]) -> list[ConfigSchema]:
    """Schemas present in ``config``, in precedence order."""
    if not isinstance(config, dict):
        return []
    return [schema for schema, extractor in EXTRACTORS if extractor(config)]


def extract_token_symbols(config: Optional[dict]) -> SymbolTable:
    """Every address the config names, with earlier schemas taking precedence."""
    table: SymbolTable = {}
    if not isinstance(config, dict):
        return table
    for _schema, extractor in EXTRACTORS:
        for address, symbol in extractor(config).items():
            table.setdefault(address, symbol)
    return table


def resolve_base_currency_symbol(config: Optional[dict], default: str) -> str:
    """Symbol of the market's base currency (``sDAI`` on most Gnosis markets)."""
    for path in (
        ("BASE_TOKENS_CONFIG", "currency", "symbol"),
        ("metadata", "currencyTokens", "base", "tokenSymbol"),
        ("currencyTokens", "base", "tokenSymbol"),
    ):
        value = _dig(config, *path)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return default


def resolve_proposal_id(config: Optional[dict]) -> Optional[str]:
    for path in (("proposalId",), ("metadata", "proposalId"), ("MARKET_ADDRESS",)):
        value = _dig(config, *path)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None
