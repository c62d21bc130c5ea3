"""Shared fixtures for candle generator tests."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from dataflow.errors import TransientWriteError
from dataflow.persistence.store import InMemoryCandleStore
from dataflow.resilience.retry import ResilientCaller
from schemas.market_data import TradeEvent

PAIR = "cUSD_CELO"

# 09:30:00 UTC sits on a 1m, 5m and 15m boundary
BASE_TIME = datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc)


def trade(seq: int, price: str = "1.00", volume: str = "10", seconds: float = 0, pair: str = PAIR) -> TradeEvent:
    return TradeEvent(
        pair=pair,
        price=Decimal(price),
        volume=Decimal(volume),
        occurred_at=BASE_TIME + timedelta(seconds=seconds),
        sequence_id=seq,
    )


class FailingStore(InMemoryCandleStore):
    """Raises TransientWriteError for the first ``failures`` writes (forever when None)"""

    def __init__(self, failures=None):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def upsert_closed_candle(self, candle):
        self.attempts += 1
        if self.failures is None or self.attempts <= self.failures:
            raise TransientWriteError("database unavailable", context={"pair": candle.pair})
        await super().upsert_closed_candle(candle)


class SleepRecorder:
    """Stand-in for the backoff wait that records requested delays"""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def make_trade():
    return trade


@pytest.fixture
def store() -> InMemoryCandleStore:
    return InMemoryCandleStore()


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def fast_retry(sleeps) -> ResilientCaller:
    return ResilientCaller(max_attempts=3, base_delay=1.0, sleep=sleeps)
