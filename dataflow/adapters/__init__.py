"""
NATS Adapters

Bus connection and subject names for trade input and candle output.
"""

from dataflow.adapters.nats_client import NatsClient, NatsConfig, Topics

__all__ = ["NatsClient", "NatsConfig", "Topics"]
