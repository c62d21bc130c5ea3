"""
Query API

FastAPI service for reading persisted candles.

HTTP Endpoints:
- GET  /              - Health check
- GET  /health        - Detailed health status
- GET  /candles/{pair}/{timeframe}  - Most recent candles, newest first
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List

from fastapi import FastAPI, HTTPException, Query, Request
from pydantic import BaseModel
import uvicorn

from dataflow.candle_aggregation.bucketing import TIMEFRAMES
from dataflow.config.loader import DEFAULT_DATABASE_URL
from dataflow.errors import CandleServiceError
from dataflow.numeric.helpers import is_valid_timeframe
from schemas.market_data import Candle

logger = logging.getLogger(__name__)


# Response models (Pydantic)
class CandleResponse(BaseModel):
    """Single candle response; decimals are strings to keep full precision"""
    pair: str
    timestamp: str  # ISO 8601 bucket start
    timeframe: str
    open: str
    high: str
    low: str
    close: str
    volume: str
    trades: int

    @classmethod
    def from_candle(cls, candle: Candle) -> "CandleResponse":
        return cls(
            pair=candle.pair,
            timestamp=candle.bucket_start.isoformat(),
            timeframe=candle.timeframe,
            open=str(candle.open),
            high=str(candle.high),
            low=str(candle.low),
            close=str(candle.close),
            volume=str(candle.volume),
            trades=candle.trade_count,
        )


class CandlesResponse(BaseModel):
    """Response containing multiple candles"""
    pair: str
    timeframe: str
    count: int
    candles: List[CandleResponse]


@asynccontextmanager
async def timescale_lifespan(app: FastAPI):
    """Open a TimescaleDB store for the lifetime of the app"""
    from dataflow.persistence.timescale import TimescaleCandleStore

    logger.info("Starting Query API...")
    store = TimescaleCandleStore(os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL))
    try:
        await store.connect()
        app.state.store = store
        logger.info("Database connection pool created")
    except Exception as e:
        logger.error(f"Failed to connect to database: {e}")
        app.state.store = None

    yield

    if app.state.store is not None:
        await store.close()
    logger.info("Query API shutdown complete")


def create_app(store=None) -> FastAPI:
    """
    Build the API.

    Args:
        store: Object with ``fetch_candles(pair, timeframe, limit)``. When
            omitted, a TimescaleDB store is opened from DATABASE_URL.
    """
    if store is None:
        app = FastAPI(
            title="Candle Generator - Query API",
            description="Query persisted OHLCV candles",
            version="1.0.0",
            lifespan=timescale_lifespan,
        )
    else:
        app = FastAPI(
            title="Candle Generator - Query API",
            description="Query persisted OHLCV candles",
            version="1.0.0",
        )
        app.state.store = store

    @app.get("/")
    async def root():
        """Health check endpoint"""
        return {
            "status": "running",
            "service": "query-api",
            "timestamp": datetime.now().isoformat(),
        }

    @app.get("/health")
    async def health(request: Request):
        """Detailed health status"""
        return {
            "status": "healthy",
            "service": "query-api",
            "store_connected": getattr(request.app.state, "store", None) is not None,
            "timestamp": datetime.now().isoformat(),
        }

    @app.get("/candles/{pair}/{timeframe}")
    async def get_candles(
        request: Request,
        pair: str,
        timeframe: str,
        limit: int = Query(default=100, ge=1, le=1000, description="Number of candles to fetch"),
    ) -> CandlesResponse:
        """
        Fetch the last N candles for a pair/timeframe.

        Raises:
            400: Invalid timeframe
            404: No candles found
            503: Store unavailable
        """
        if not is_valid_timeframe(timeframe):
            raise HTTPException(
                status_code=400,
                detail=f"Invalid timeframe '{timeframe}'. Must be one of: {list(TIMEFRAMES.keys())}",
            )

        candle_store = getattr(request.app.state, "store", None)
        if candle_store is None:
            raise HTTPException(status_code=503, detail="Candle store unavailable")

        try:
            candles = await candle_store.fetch_candles(pair, timeframe, limit)
        except CandleServiceError as e:
            logger.error(f"Candle query failed: {e}")
            raise HTTPException(status_code=500, detail=f"Candle query failed: {e}")

        if not candles:
            raise HTTPException(
                status_code=404,
                detail=f"No candles found for {pair} {timeframe}",
            )

        logger.info(f"Fetched {len(candles)} candles for {pair} {timeframe} (limit={limit})")

        return CandlesResponse(
            pair=pair,
            timeframe=timeframe,
            count=len(candles),
            candles=[CandleResponse.from_candle(c) for c in candles],
        )

    return app


if __name__ == "__main__":
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    port = int(os.getenv("PORT", "8001"))
    host = os.getenv("HOST", "0.0.0.0")

    logger.info(f"Starting Query API on {host}:{port}")
    uvicorn.run(create_app(), host=host, port=port)
