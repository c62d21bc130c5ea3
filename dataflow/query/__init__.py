"""
Query Layer

Read access to persisted candles.
"""
