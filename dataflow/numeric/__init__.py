"""
Numeric Utilities

Fixed-point conversion and validation helpers.
"""

from dataflow.numeric.fixed_point import (
    DEFAULT_DECIMALS,
    FixedPointConverter,
    parse_decimal,
    to_decimal,
    to_raw,
)
from dataflow.numeric.helpers import (
    calculate_percentage_change,
    is_valid_address,
    is_valid_pair_id,
    is_valid_timeframe,
    round_to_decimals,
)

__all__ = [
    "DEFAULT_DECIMALS",
    "FixedPointConverter",
    "parse_decimal",
    "to_decimal",
    "to_raw",
    "calculate_percentage_change",
    "is_valid_address",
    "is_valid_pair_id",
    "is_valid_timeframe",
    "round_to_decimals",
]
