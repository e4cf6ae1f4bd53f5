"""Unit conversion and validation helpers shared across the ledger.


- WEI_PER_ETH controls how on-chain payment amounts are displayed.
- wei_to_eth converts the integer wei emitted by the payment contract into ETH.
- normalize_address validates and lowercases a 0x wallet address.
"""

import re
from decimal import Decimal

WEI_DECIMALS = 18
WEI_PER_ETH = 10 ** WEI_DECIMALS

ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
TX_HASH_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")


def wei_to_eth(amount_wei: int) -> Decimal:
    """
    Convert integer wei to an ETH Decimal, normalized so 10**16 wei → Decimal("0.01").
    """
    return Decimal(int(amount_wei)).scaleb(-WEI_DECIMALS).normalize()


def format_eth(amount_wei: int) -> str:
    """
    Human-readable ETH string without exponent notation (e.g. "0.05", "1").
    """
    return format(wei_to_eth(amount_wei), "f")


def is_address(value) -> bool:
    return isinstance(value, str) and bool(ADDRESS_RE.match(value))


def normalize_address(value: str) -> str:
    """
    Lowercase a 0x address. Raises ValueError if it is not 20 hex bytes.
    """
    if not is_address(value):
        raise ValueError(f"invalid address: {value!r}")
    return value.lower()


def normalize_tx_hash(value: str) -> str:
    if not isinstance(value, str) or not TX_HASH_RE.match(value):
        raise ValueError(f"invalid transaction hash: {value!r}")
    return value.lower()
