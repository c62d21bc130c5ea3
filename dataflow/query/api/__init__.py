"""
Query API

FastAPI app serving persisted candles.
"""
