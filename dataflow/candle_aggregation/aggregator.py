"""
Candle Aggregator

Folds trade events into one open candle per (pair, timeframe) and hands
each candle to the CandleStore exactly once, when its bucket rolls over.

Ordering rules per pair:
- a sequence id at or below the last applied one is rejected (duplicate/stale)
- a trade that maps to a bucket older than the open one is fatal
  (OutOfOrderTimestamp), checked before any state changes
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple

from dataflow.candle_aggregation.bucketing import EPOCH, TIMEFRAMES, bucket_end, bucket_start, to_utc
from dataflow.errors import (
    CandlePersistenceError,
    MalformedNumericInput,
    OutOfOrderTimestamp,
    RetriesExhausted,
    RetryCancelled,
)
from dataflow.persistence.store import CandleStore
from dataflow.resilience.retry import ResilientCaller
from schemas.market_data import AppliedOutcome, Candle, TradeEvent

logger = logging.getLogger(__name__)

WorkingKey = Tuple[str, str]


class ClosedMarker(NamedTuple):
    """Most recent bucket already handed to the store for a (pair, timeframe)"""
    bucket_start: datetime
    last_sequence_id: Optional[int]


class CandleBuilder:
    """Builds a candle from incoming trades"""

    def __init__(self, pair: str, timeframe: str, start_time: datetime, trade: TradeEvent):
        self.pair = pair
        self.timeframe = timeframe
        self.start_time = start_time
        self.open: Decimal = trade.price
        self.high: Decimal = trade.price
        self.low: Decimal = trade.price
        self.close: Decimal = trade.price
        self.volume: Decimal = trade.volume
        self.trade_count: int = 1
        self.last_sequence_id: int = trade.sequence_id

    def add_trade(self, trade: TradeEvent) -> None:
        """Add a trade to this candle"""
        price = trade.price
        if price > self.high:
            self.high = price
        if price < self.low:
            self.low = price
        self.close = price
        self.volume += trade.volume
        self.trade_count += 1
        self.last_sequence_id = trade.sequence_id

    def build(self, closed: bool = False) -> Candle:
        """Snapshot the builder as an immutable Candle"""
        return Candle(
            pair=self.pair,
            timeframe=self.timeframe,
            bucket_start=self.start_time,
            open=self.open,
            high=self.high,
            low=self.low,
            close=self.close,
            volume=self.volume,
            trade_count=self.trade_count,
            is_closed=closed,
            last_sequence_id=self.last_sequence_id,
        )


def _validate_trade(event: TradeEvent) -> None:
    context = {"pair": event.pair, "sequence_id": event.sequence_id}
    if not isinstance(event.price, Decimal) or not event.price.is_finite() or event.price <= 0:
        raise MalformedNumericInput(f"Invalid price {event.price!r}", context=context)
    if not isinstance(event.volume, Decimal) or not event.volume.is_finite() or event.volume < 0:
        raise MalformedNumericInput(f"Invalid volume {event.volume!r}", context=context)
    if isinstance(event.sequence_id, bool) or not isinstance(event.sequence_id, int) or event.sequence_id < 0:
        raise MalformedNumericInput(f"Invalid sequence_id {event.sequence_id!r}", context=context)
    if not isinstance(event.occurred_at, datetime) or to_utc(event.occurred_at) < EPOCH:
        raise MalformedNumericInput(f"Invalid occurred_at {event.occurred_at!r}", context=context)


class CandleAggregator:
    """
    Aggregates trades into candles for multiple pairs and timeframes.

    Example usage:
        aggregator = CandleAggregator(store, ResilientCaller(max_attempts=3))
        outcome = await aggregator.apply_trade(trade)
        aggregator.current_candle("cUSD_CELO", "1m")

    Calls for the same pair are serialized by a per-pair lock; calls for
    different pairs never contend. Flushes run after the lock is released.
    """

    def __init__(
        self,
        store: CandleStore,
        retry: Optional[ResilientCaller] = None,
        timeframes: Optional[Iterable[str]] = None,
    ):
        self.store = store
        self.retry = retry or ResilientCaller()
        self.timeframes = list(timeframes) if timeframes else list(TIMEFRAMES.keys())
        for timeframe in self.timeframes:
            if timeframe not in TIMEFRAMES:
                raise ValueError(
                    f"Invalid timeframe '{timeframe}'. Must be one of: {list(TIMEFRAMES.keys())}"
                )

        self._builders: Dict[WorkingKey, CandleBuilder] = {}
        self._closed: Dict[WorkingKey, ClosedMarker] = {}
        self._last_seen: Dict[str, int] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

        # Metrics
        self._applied = 0
        self._duplicates = 0
        self._stale = 0
        self._flushed = 0
        self._flush_failures = 0

    @property
    def stats(self) -> dict:
        return {
            "applied": self._applied,
            "duplicates": self._duplicates,
            "stale": self._stale,
            "flushed": self._flushed,
            "flush_failures": self._flush_failures,
            "open_candles": len(self._builders),
        }

    def last_seen(self, pair: str) -> Optional[int]:
        """Highest sequence id applied for a pair"""
        return self._last_seen.get(pair)

    def current_candle(self, pair: str, timeframe: str) -> Optional[Candle]:
        """Snapshot of the open candle for a pair/timeframe"""
        builder = self._builders.get((pair, timeframe))
        return builder.build() if builder else None

    def open_candles(self) -> List[Candle]:
        return [builder.build() for builder in self._builders.values()]

    def restore(self, candle: Candle) -> None:
        """
        Seed state from a candle the store already holds (warm restart).

        Replayed trades at or below the candle's last_sequence_id are
        skipped for that timeframe. Once every timeframe of the pair is
        restored, the pair resumes from the lowest restored sequence id.
        """
        if candle.timeframe not in self.timeframes:
            return
        key = (candle.pair, candle.timeframe)
        if key in self._builders:
            raise RuntimeError(f"Cannot restore {key}: a candle is already open")

        self._closed[key] = ClosedMarker(to_utc(candle.bucket_start), candle.last_sequence_id)
        logger.info(
            f"Restored {candle.pair} {candle.timeframe} through "
            f"{candle.bucket_start.isoformat()} (sequence_id {candle.last_sequence_id})"
        )

        markers = [self._closed.get((candle.pair, tf)) for tf in self.timeframes]
        if all(m is not None and m.last_sequence_id is not None for m in markers):
            resume_from = min(m.last_sequence_id for m in markers)
            current = self._last_seen.get(candle.pair)
            if current is None or resume_from > current:
                self._last_seen[candle.pair] = resume_from

    async def apply_trade(self, event: TradeEvent) -> AppliedOutcome:
        """
        Fold one trade into every timeframe.

        Returns:
            APPLIED, or REJECTED_DUPLICATE / REJECTED_STALE without touching state

        Raises:
            MalformedNumericInput: Price, volume, sequence id or timestamp is invalid
            OutOfOrderTimestamp: The trade belongs to a bucket already rolled over
            CandlePersistenceError: The trade was applied but closed candles
                could not be stored
        """
        _validate_trade(event)

        async with self._locks[event.pair]:
            last = self._last_seen.get(event.pair)
            if last is not None and event.sequence_id <= last:
                if event.sequence_id == last:
                    self._duplicates += 1
                    logger.debug(f"Duplicate trade {event.pair} #{event.sequence_id}")
                    return AppliedOutcome.REJECTED_DUPLICATE
                self._stale += 1
                logger.debug(f"Stale trade {event.pair} #{event.sequence_id} (last seen {last})")
                return AppliedOutcome.REJECTED_STALE

            buckets = self._plan(event)
            self._last_seen[event.pair] = event.sequence_id

            completed: List[Candle] = []
            for timeframe, start in buckets.items():
                closed = self._fold(event, timeframe, start)
                if closed is not None:
                    completed.append(closed)

            self._applied += 1

        # Persist completed candles outside the lock
        if completed:
            await self._flush(completed)

        return AppliedOutcome.APPLIED

    def _plan(self, event: TradeEvent) -> Dict[str, datetime]:
        """Bucket per timeframe; raises before any mutation if one has already closed"""
        buckets = {}
        for timeframe in self.timeframes:
            key = (event.pair, timeframe)
            start = bucket_start(event.occurred_at, timeframe)

            marker = self._closed.get(key)
            builder = self._builders.get(key)
            if (
                builder is None
                and marker is not None
                and marker.last_sequence_id is not None
                and event.sequence_id <= marker.last_sequence_id
            ):
                # Already durable before a restart
                continue

            if builder is not None:
                floor, closed_floor = builder.start_time, False
            elif marker is not None:
                floor, closed_floor = marker.bucket_start, True
            else:
                buckets[timeframe] = start
                continue

            if start < floor or (closed_floor and start == floor):
                context = {
                    "pair": event.pair,
                    "timeframe": timeframe,
                    "bucket_start": start.isoformat(),
                    "current_bucket_start": floor.isoformat(),
                    "sequence_id": event.sequence_id,
                }
                logger.critical(
                    f"Out-of-order trade {event.pair} #{event.sequence_id}: "
                    f"{timeframe} bucket {start.isoformat()} is behind {floor.isoformat()}"
                )
                raise OutOfOrderTimestamp(
                    f"Trade {event.pair} #{event.sequence_id} maps to {timeframe} bucket "
                    f"{start.isoformat()}, already past {floor.isoformat()}",
                    context=context,
                )
            buckets[timeframe] = start
        return buckets

    def _fold(self, event: TradeEvent, timeframe: str, start: datetime) -> Optional[Candle]:
        """Apply the trade to one timeframe; returns the candle it closed, if any"""
        key = (event.pair, timeframe)
        existing = self._builders.get(key)

        if existing is not None and existing.start_time == start:
            existing.add_trade(event)
            return None

        completed = None
        if existing is not None:
            # Time has moved to a new candle period
            completed = self._close(key, existing)

        self._builders[key] = CandleBuilder(event.pair, timeframe, start, event)
        return completed

    def _close(self, key: WorkingKey, builder: CandleBuilder) -> Candle:
        candle = builder.build(closed=True)
        del self._builders[key]
        self._closed[key] = ClosedMarker(candle.bucket_start, candle.last_sequence_id)
        return candle

    async def close_expired(self, now: datetime, grace: float = 0.0) -> List[Candle]:
        """
        Close open candles whose bucket ended more than ``grace`` seconds ago.

        Returns the candles that were closed. A later trade for a closed
        bucket is an OutOfOrderTimestamp, so grace should cover chain lag.
        """
        now = to_utc(now)
        completed: List[Candle] = []
        for pair in sorted({pair for pair, _ in self._builders}):
            async with self._locks[pair]:
                for timeframe in self.timeframes:
                    key = (pair, timeframe)
                    builder = self._builders.get(key)
                    if builder is None:
                        continue
                    end = bucket_end(builder.start_time, timeframe)
                    if (now - end).total_seconds() >= grace:
                        completed.append(self._close(key, builder))

        if completed:
            logger.info(f"Closing {len(completed)} idle candle(s)")
            await self._flush(completed)
        return completed

    async def _flush(self, candles: List[Candle]) -> None:
        """Store closed candles; failures are dropped, logged and re-raised together"""
        failures: List[Candle] = []

        for candle in candles:
            description = (
                f"upsert {candle.pair} {candle.timeframe} {candle.bucket_start.isoformat()}"
            )
            try:
                await self.retry.execute(
                    lambda c=candle: self.store.upsert_closed_candle(c),
                    description=description,
                )
            except (RetriesExhausted, RetryCancelled) as e:
                failures.append(candle)
                self._log_dropped(candle, e)
                continue
            except Exception as e:
                failures.append(candle)
                self._log_dropped(candle, e, exc_info=True)
                continue

            self._flushed += 1
            logger.info(
                f"Flushed candle: {candle.pair} {candle.timeframe} "
                f"{candle.bucket_start.isoformat()} O={candle.open} H={candle.high} "
                f"L={candle.low} C={candle.close} V={candle.volume} trades={candle.trade_count}"
            )

        if failures:
            self._flush_failures += len(failures)
            raise CandlePersistenceError(failures)

    def _log_dropped(self, candle: Candle, error: Exception, exc_info: bool = False) -> None:
        logger.error(
            f"Dropped closed candle, backfill required: pair={candle.pair} "
            f"timeframe={candle.timeframe} bucket_start={candle.bucket_start.isoformat()} "
            f"last_sequence_id={candle.last_sequence_id} "
            f"O={candle.open} H={candle.high} L={candle.low} C={candle.close} "
            f"V={candle.volume} trades={candle.trade_count}: {error}",
            exc_info=exc_info,
        )
