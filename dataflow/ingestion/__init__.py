"""
Ingestion

Trade event sources polled by the candle generator.
"""

from dataflow.ingestion.event_source import EventSource, InMemoryEventSource, NatsTradeEventSource

__all__ = ["EventSource", "InMemoryEventSource", "NatsTradeEventSource"]
