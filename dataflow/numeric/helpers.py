"""
Numeric and validation helpers used around the candle pipeline.
"""

import re
from decimal import ROUND_HALF_UP, Decimal
from typing import Union

from dataflow.candle_aggregation.bucketing import TIMEFRAMES

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
# Symbol pairs as stored in trading_pairs.pair, e.g. "cUSD_CELO"
_SYMBOL_PAIR_RE = re.compile(r"^[A-Za-z0-9.]{1,32}_[A-Za-z0-9.]{1,32}$")

Number = Union[int, Decimal]


def calculate_percentage_change(old_value: Number, new_value: Number) -> Decimal:
    """Percentage change from old to new; 0 when the old value is 0."""
    old = Decimal(old_value)
    if old == 0:
        return Decimal(0)
    return (Decimal(new_value) - old) / old * 100


def round_to_decimals(value: Number, decimals: int = 6) -> Decimal:
    """Round half-up to a fixed number of decimal places."""
    return Decimal(value).quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_UP)


def is_valid_address(address: str) -> bool:
    return isinstance(address, str) and bool(_ADDRESS_RE.fullmatch(address))


def is_valid_timeframe(timeframe: str) -> bool:
    return timeframe in TIMEFRAMES


def is_valid_pair_id(pair: str) -> bool:
    """A pair is either a pool/contract address or a SYMBOL_SYMBOL name."""
    if not isinstance(pair, str):
        return False
    return is_valid_address(pair) or bool(_SYMBOL_PAIR_RE.fullmatch(pair))
