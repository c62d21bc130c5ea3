"""Tests for candle stores."""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import BASE_TIME, PAIR
from dataflow.errors import TransientFetchError, TransientWriteError
from dataflow.persistence.notifying import NotifyingCandleStore
from dataflow.persistence.store import CandleStore, InMemoryCandleStore, ResumableCandleStore
from dataflow.persistence.timescale import UPSERT, TimescaleCandleStore
from schemas.market_data import Candle


def candle(minutes=0, timeframe="1m", close="1.00"):
    return Candle(
        pair=PAIR,
        timeframe=timeframe,
        bucket_start=BASE_TIME + timedelta(minutes=minutes),
        open=Decimal("1.00"),
        high=Decimal("1.05"),
        low=Decimal("0.98"),
        close=Decimal(close),
        volume=Decimal("35"),
        trade_count=3,
        is_closed=True,
        last_sequence_id=10 + minutes,
    )


class TestInMemoryCandleStore:
    def test_upsert_is_idempotent_per_bucket(self, store):
        async def scenario():
            await store.upsert_closed_candle(candle(0, close="1.00"))
            await store.upsert_closed_candle(candle(0, close="1.01"))
            return await store.fetch_candles(PAIR, "1m")

        [stored] = asyncio.run(scenario())
        assert stored.close == Decimal("1.01")
        assert len(store) == 1
        assert store.writes == 2

    def test_last_known_bucket(self, store):
        async def scenario():
            for minutes in (2, 0, 1):
                await store.upsert_closed_candle(candle(minutes))
            await store.upsert_closed_candle(candle(10, timeframe="5m"))
            return (
                await store.load_last_known_bucket(PAIR, "1m"),
                await store.load_last_known_bucket(PAIR, "1h"),
            )

        latest, missing = asyncio.run(scenario())
        assert latest.bucket_start == BASE_TIME + timedelta(minutes=2)
        assert missing is None

    def test_protocols(self, store):
        assert isinstance(store, CandleStore)
        assert isinstance(store, ResumableCandleStore)


class FakeNats:
    def __init__(self, fail=False):
        self.fail = fail
        self.published = []

    async def publish_json(self, subject, data):
        if self.fail:
            raise RuntimeError("NATS client not connected")
        self.published.append((subject, data))


class TestNotifyingCandleStore:
    def test_stores_then_publishes(self, store):
        nats = FakeNats()
        notifying = NotifyingCandleStore(store, nats)

        asyncio.run(notifying.upsert_closed_candle(candle()))

        assert len(store) == 1
        [(subject, data)] = nats.published
        assert subject == f"candles.{PAIR}.1m"
        assert Candle.from_json(data) == candle()

    def test_publish_failure_is_not_a_write_failure(self, store):
        notifying = NotifyingCandleStore(store, FakeNats(fail=True))
        asyncio.run(notifying.upsert_closed_candle(candle()))
        assert len(store) == 1

    def test_write_failure_skips_publish(self):
        class DownStore:
            async def upsert_closed_candle(self, candle):
                raise TransientWriteError("down")

        nats = FakeNats()
        with pytest.raises(TransientWriteError):
            asyncio.run(NotifyingCandleStore(DownStore(), nats).upsert_closed_candle(candle()))
        assert nats.published == []

    def test_delegates_restore_lookup(self, store):
        asyncio.run(store.upsert_closed_candle(candle(3)))
        notifying = NotifyingCandleStore(store, FakeNats())
        latest = asyncio.run(notifying.load_last_known_bucket(PAIR, "1m"))
        assert latest.last_sequence_id == 13


class FakeConnection:
    def __init__(self, rows=None, error=None):
        self.rows = rows or []
        self.error = error
        self.executed = []
        self.fetched = []

    async def execute(self, query, *args):
        if self.error:
            raise self.error
        self.executed.append((query, args))

    async def fetch(self, query, *args):
        if self.error:
            raise self.error
        self.fetched.append((query, args))
        return self.rows


class FakeAcquire:
    def __init__(self, conn):
        self.conn = conn

    async def __aenter__(self):
        return self.conn

    async def __aexit__(self, *exc):
        return False


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.closed = False

    def acquire(self):
        return FakeAcquire(self.conn)

    async def close(self):
        self.closed = True


class TestTimescaleCandleStore:
    def test_upsert_arguments(self):
        conn = FakeConnection()
        store = TimescaleCandleStore("postgresql://unused", pool=FakePool(conn))

        asyncio.run(store.upsert_closed_candle(candle()))

        [(query, args)] = conn.executed
        assert query == UPSERT
        assert args == (
            BASE_TIME, PAIR, "1m",
            Decimal("1.00"), Decimal("1.05"), Decimal("0.98"), Decimal("1.00"),
            Decimal("35"), 3, 10,
        )
        assert store.candles_written == 1

    def test_connection_error_is_transient(self):
        store = TimescaleCandleStore(
            "postgresql://unused",
            pool=FakePool(FakeConnection(error=ConnectionResetError("reset by peer"))),
        )
        with pytest.raises(TransientWriteError) as excinfo:
            asyncio.run(store.upsert_closed_candle(candle()))
        assert excinfo.value.context["pair"] == PAIR
        assert isinstance(excinfo.value.__cause__, ConnectionResetError)

    def test_not_connected(self):
        store = TimescaleCandleStore("postgresql://unused")
        with pytest.raises(TransientWriteError):
            asyncio.run(store.upsert_closed_candle(candle()))
        with pytest.raises(TransientFetchError):
            asyncio.run(store.fetch_candles(PAIR, "1m"))

    def test_fetch_maps_rows(self):
        row = {
            "time": BASE_TIME,
            "pair": PAIR,
            "timeframe": "1m",
            "open": Decimal("1.00"),
            "high": Decimal("1.05"),
            "low": Decimal("0.98"),
            "close": Decimal("1.00"),
            "volume": Decimal("35"),
            "trades": 3,
            "last_sequence_id": 10,
        }
        conn = FakeConnection(rows=[row])
        store = TimescaleCandleStore("postgresql://unused", pool=FakePool(conn))

        latest = asyncio.run(store.load_last_known_bucket(PAIR, "1m"))

        assert latest == candle()
        assert conn.fetched[0][1] == (PAIR, "1m", 1)

    def test_close_releases_pool(self):
        pool = FakePool(FakeConnection())
        store = TimescaleCandleStore("postgresql://unused", pool=pool)
        asyncio.run(store.close())
        assert pool.closed is True
        assert store.is_connected is False
