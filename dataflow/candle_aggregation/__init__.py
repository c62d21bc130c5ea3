"""
Candle Aggregation Service

Polls on-chain trade events and aggregates them into OHLCV candles.
Supports timeframes: 1m, 5m, 15m, 1h, 4h, 1d.
"""
