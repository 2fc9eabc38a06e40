"""
Token amount helpers.

Raw on-chain amounts are integers in the token's smallest unit (wei for FTM).
They routinely exceed 64-bit range, so conversion to a display float goes
through exact rational arithmetic first.
"""

from fractions import Fraction
from typing import Union

FTM_DECIMALS = 18


def wei_to_float(amount_raw: int, decimals: int = FTM_DECIMALS) -> float:
    """Convert a raw integer amount into a float display amount (amount / 10**decimals)."""
    amount_raw = int(amount_raw)
    if amount_raw < 0:
        raise ValueError(f"amount must be non-negative, got {amount_raw}")
    if decimals < 0:
        raise ValueError(f"decimals must be non-negative, got {decimals}")
    return float(Fraction(amount_raw, 10 ** decimals))


def parse_quantity(value: Union[str, int]) -> int:
    """Parse a JSON-RPC / GraphQL quantity ("0x1a", "26" or 26) into an int."""
    if isinstance(value, bool):
        raise ValueError(f"invalid quantity: {value!r}")
    if isinstance(value, int):
        return value
    if not isinstance(value, str) or not value:
        raise ValueError(f"invalid quantity: {value!r}")
    if value.startswith(('0x', '0X')):
        return int(value[2:], 16)
    return int(value, 10)
