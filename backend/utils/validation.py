import re
from typing import Optional


# Ethereum address regex
ETH_ADDRESS_REGEX = re.compile(r"^0x[a-fA-F0-9]{40}$")


def validate_eth_address(address: str) -> str:
    """Validate Ethereum address format"""
    if not address:
        raise ValueError("Address cannot be empty")

    address = address.strip()

    if not ETH_ADDRESS_REGEX.match(address):
        raise ValueError(f"Invalid Ethereum address format: {address}")

    return address


def normalize_address(address: Optional[str]) -> str:
    """Validate and lower-case an address for use as a cache / filter key."""
    return validate_eth_address(address or "").lower()


def is_eth_address(address: object) -> bool:
    return isinstance(address, str) and bool(ETH_ADDRESS_REGEX.match(address.strip()))
