"""
Minimal ERC-20 ``symbol()`` reader over JSON-RPC ``eth_call``.

Handles both return encodings seen on Gnosis: the standard ABI ``string``
and the legacy ``bytes32`` used by some older tokens.
"""

import itertools
from typing import Optional

import httpx

from config import settings
from utils.logger import rpc_logger as logger
from utils.retry import RpcRateLimitError, is_rate_limit_error
from utils.validation import is_eth_address

# keccak256("symbol()")[:4]
SYMBOL_SELECTOR = "0x95d89b41"

# Provider-specific JSON-RPC codes for throttling
_RATE_LIMIT_RPC_CODES = {-32005, -32029, -32090, 429}


class TokenMetadataError(Exception):
    """The contract answered but not like an ERC-20 (revert, empty, undecodable)."""


def _http_timeout() -> httpx.Timeout:
    seconds = settings.RPC_TIMEOUT_SECONDS
    return httpx.Timeout(connect=min(5.0, seconds), read=seconds, write=seconds, pool=seconds)


def decode_symbol_result(result: str) -> str:
    """Decode an ``eth_call`` return value into a symbol string."""
    if not isinstance(result, str) or not result.startswith("0x"):
        raise TokenMetadataError(f"unexpected eth_call result: {result!r}")
    data = result[2:]
    if not data:
        raise TokenMetadataError("empty eth_call result (not a contract?)")
    try:
        raw = bytes.fromhex(data)
    except ValueError as exc:
        raise TokenMetadataError(f"eth_call result is not hex: {result[:20]}...") from exc

    if len(raw) == 32:
        # bytes32 symbol, right-padded with NULs
        text = raw.rstrip(b"\x00").decode("utf-8", errors="replace")
    elif len(raw) >= 64:
        offset = int.from_bytes(raw[0:32], "big")
        if offset + 32 > len(raw):
            raise TokenMetadataError("string offset out of range")
        length = int.from_bytes(raw[offset : offset + 32], "big")
        start = offset + 32
        if start + length > len(raw):
            raise TokenMetadataError("string length out of range")
        text = raw[start : start + length].decode("utf-8", errors="replace")
    else:
        raise TokenMetadataError(f"eth_call result too short ({len(raw)} bytes)")

    text = text.strip("\x00").strip()
    if not text:
        raise TokenMetadataError("token returned an empty symbol")
    return text


class Erc20SymbolClient:
    """Reads token symbols from a given JSON-RPC endpoint."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client
        self._ids = itertools.count(1)

    async def fetch_symbol(self, endpoint_url: str, token_address: str) -> str:
        """Call ``symbol()`` on ``token_address`` through ``endpoint_url``.

        Raises ``RpcRateLimitError`` on throttling, ``TokenMetadataError`` on
        non-ERC-20 responses and lets httpx transport errors and
        malformed endpoint payloads (``ValueError``) propagate.
        """
        if not is_eth_address(token_address):
            raise ValueError(f"Invalid Ethereum address format: {token_address}")

        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": "eth_call",
            "params": [{"to": token_address, "data": SYMBOL_SELECTOR}, "latest"],
        }

        if self._client is not None:
            response = await self._client.post(endpoint_url, json=payload)
        else:
            async with httpx.AsyncClient(timeout=_http_timeout()) as client:
                response = await client.post(endpoint_url, json=payload)
        response.raise_for_status()
        body = response.json()

        if not isinstance(body, dict):
            raise ValueError(f"{endpoint_url}: unexpected RPC payload type {type(body).__name__}")

        error = body.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message", "") if isinstance(error, dict) else str(error)
            if code in _RATE_LIMIT_RPC_CODES or is_rate_limit_error(Exception(message)):
                raise RpcRateLimitError(f"{endpoint_url}: {message or code}")
            raise TokenMetadataError(f"eth_call failed: {message or code}")

        symbol = decode_symbol_result(body.get("result"))
        logger.debug("Resolved token symbol via RPC", token=token_address, symbol=symbol)
        return symbol

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
