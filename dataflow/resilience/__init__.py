"""
Resilience

Retry with exponential backoff for EventSource and CandleStore calls.
"""

from dataflow.resilience.retry import ResilientCaller

__all__ = ["ResilientCaller"]
