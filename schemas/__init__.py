"""
Candle Generator - Typed Message Catalog

Core data types for trade events and candles.
"""

from schemas.market_data import AppliedOutcome, Candle, TradeEvent

__all__ = [
    "AppliedOutcome",
    "Candle",
    "TradeEvent",
]
