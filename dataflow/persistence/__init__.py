"""
Persistence

Candle store contract and its in-memory and TimescaleDB implementations.
"""

from dataflow.persistence.store import CandleStore, InMemoryCandleStore, ResumableCandleStore

__all__ = ["CandleStore", "InMemoryCandleStore", "ResumableCandleStore"]
