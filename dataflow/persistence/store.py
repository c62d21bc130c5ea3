"""
Candle Store Interface

Persistence contract used by the aggregator's flush path, plus an
in-memory implementation for tests and single-process deployments.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Tuple, runtime_checkable

from schemas.market_data import Candle

logger = logging.getLogger(__name__)


@runtime_checkable
class CandleStore(Protocol):
    """
    Protocol for durable candle storage.

    Implementations must make ``upsert_closed_candle`` idempotent on
    (pair, timeframe, bucket_start) and raise TransientWriteError on
    recoverable failures.
    """

    async def upsert_closed_candle(self, candle: Candle) -> None:
        ...


@runtime_checkable
class ResumableCandleStore(CandleStore, Protocol):
    """Store that can hand back the newest persisted bucket for warm restarts"""

    async def load_last_known_bucket(self, pair: str, timeframe: str) -> Optional[Candle]:
        ...


class InMemoryCandleStore:
    """Dict-backed CandleStore keyed by (pair, timeframe, bucket_start)"""

    def __init__(self):
        self._candles: Dict[Tuple[str, str, datetime], Candle] = {}
        self.writes = 0

    async def upsert_closed_candle(self, candle: Candle) -> None:
        self._candles[(candle.pair, candle.timeframe, candle.bucket_start)] = candle
        self.writes += 1
        logger.debug(
            f"Stored candle {candle.pair} {candle.timeframe} {candle.bucket_start.isoformat()}"
        )

    async def load_last_known_bucket(self, pair: str, timeframe: str) -> Optional[Candle]:
        candles = self._select(pair, timeframe)
        return candles[0] if candles else None

    async def fetch_candles(self, pair: str, timeframe: str, limit: int = 100) -> List[Candle]:
        """Most recent candles first"""
        return self._select(pair, timeframe)[:limit]

    def _select(self, pair: str, timeframe: str) -> List[Candle]:
        candles = [
            candle
            for (p, tf, _), candle in self._candles.items()
            if p == pair and tf == timeframe
        ]
        return sorted(candles, key=lambda c: c.bucket_start, reverse=True)

    def __len__(self) -> int:
        return len(self._candles)
