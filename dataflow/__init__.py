"""
Dataflow Layer

Event I/O layer for the candle generator. Contains:
- ingestion: trade event sources (NATS, in-memory replay)
- candle_aggregation: trade to candle aggregation and the polling service
- persistence: candle stores (TimescaleDB, in-memory)
- resilience: retry with exponential backoff
- numeric: fixed-point conversion and validation helpers
- adapters: NATS client adapters
- query: read API over persisted candles
"""
