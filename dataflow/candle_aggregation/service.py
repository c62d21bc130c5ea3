"""
Candle Generator Service

Owns the polling loop: fetch new trades for every pair from the
EventSource, fold them through the CandleAggregator, wait, repeat.

State machine: STOPPED -> STARTING -> RUNNING -> STOPPING -> STOPPED
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from dataflow.candle_aggregation.aggregator import CandleAggregator
from dataflow.errors import (
    CandlePersistenceError,
    MalformedNumericInput,
    OutOfOrderTimestamp,
    RetriesExhausted,
    RetryCancelled,
)
from dataflow.ingestion.event_source import EventSource
from dataflow.persistence.store import CandleStore, ResumableCandleStore
from dataflow.resilience.retry import ResilientCaller
from schemas.market_data import AppliedOutcome, TradeEvent

logger = logging.getLogger(__name__)


class ServiceState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CandleGeneratorService:
    """
    Long-running trade-to-candle ingestion loop.

    Example usage:
        service = CandleGeneratorService(source, store, pairs=["cUSD_CELO"])
        loop.add_signal_handler(signal.SIGTERM, service.stop)
        await service.start()   # returns once stop() has drained the loop

    Failures of the source or store that survive retries are logged and
    counted; the loop carries on at the next interval. Only an
    OutOfOrderTimestamp ends the loop without a stop() call, and it
    propagates out of start().
    """

    def __init__(
        self,
        source: EventSource,
        store: CandleStore,
        pairs: Iterable[str],
        timeframes: Optional[Iterable[str]] = None,
        poll_interval: float = 5.0,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        idle_close_grace: Optional[float] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.source = source
        self.store = store
        self.pairs: List[str] = list(dict.fromkeys(pairs))
        if not self.pairs:
            raise ValueError("At least one pair is required")
        self.poll_interval = poll_interval
        self.idle_close_grace = idle_close_grace
        self.clock = clock

        self._stop_event = asyncio.Event()
        self.retry = ResilientCaller(
            max_attempts=max_attempts,
            base_delay=base_delay,
            stop_event=self._stop_event,
        )
        # Flush retries ignore stop(), so a shutdown never drops a closed candle
        self.flush_retry = ResilientCaller(max_attempts=max_attempts, base_delay=base_delay)
        self.aggregator = CandleAggregator(store, self.flush_retry, timeframes)

        self._state = ServiceState.STOPPED
        self._run_task: Optional[asyncio.Task] = None

        # Metrics
        self._iterations = 0
        self._fetch_failures = 0
        self._malformed = 0
        self._persistence_failures = 0

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == ServiceState.RUNNING

    def get_metrics(self) -> Dict:
        return {
            "state": self._state.value,
            "iterations": self._iterations,
            "fetch_failures": self._fetch_failures,
            "malformed_events": self._malformed,
            "persistence_failures": self._persistence_failures,
            "last_seen": {pair: self.aggregator.last_seen(pair) for pair in self.pairs},
            "aggregator": self.aggregator.stats,
        }

    async def start(self) -> None:
        """
        Run the service until stop() is called.

        Calling start() while the service is starting or running waits on
        the existing run instead of launching a second loop.
        """
        if self._run_task is not None and not self._run_task.done():
            logger.info("Candle generator already running")
            await asyncio.shield(self._run_task)
            return

        self._stop_event.clear()
        self._state = ServiceState.STARTING
        self._run_task = asyncio.ensure_future(self._run())
        await self._run_task

    def stop(self) -> None:
        """
        Ask the loop to exit at its next checkpoint.

        Safe to call from a signal handler. In-flight polls and flushes
        finish, flush retries included; poll waits and backoffs end immediately.
        """
        if self._state in (ServiceState.STOPPED, ServiceState.STOPPING):
            return
        logger.info("Stopping candle generator...")
        self._state = ServiceState.STOPPING
        self._stop_event.set()

    async def _run(self) -> None:
        try:
            logger.info(
                f"Starting candle generator for {len(self.pairs)} pair(s), "
                f"timeframes: {self.aggregator.timeframes}"
            )
            try:
                await self._restore()
            except RetryCancelled:
                logger.info("Warm restart interrupted by stop request")
                return

            if self._stop_event.is_set():
                return
            self._state = ServiceState.RUNNING
            logger.info(f"Candle generator running ({self.poll_interval}s poll interval)")

            while not self._stop_event.is_set():
                await self.run_once()
                if self._stop_event.is_set():
                    break
                await self._wait(self.poll_interval)

        except OutOfOrderTimestamp as e:
            logger.critical(f"Invariant violation, stopping candle generator: {e} {e.context}")
            raise
        finally:
            self._state = ServiceState.STOPPED
            logger.info(f"Candle generator stopped. Metrics: {self.get_metrics()}")

    async def _restore(self) -> None:
        """Warm restart from the newest persisted bucket of each pair/timeframe"""
        if not isinstance(self.store, ResumableCandleStore):
            return

        restored = 0
        for pair in self.pairs:
            for timeframe in self.aggregator.timeframes:
                candle = await self.retry.execute(
                    lambda p=pair, tf=timeframe: self.store.load_last_known_bucket(p, tf),
                    description=f"load last bucket {pair} {timeframe}",
                )
                if candle is not None:
                    self.aggregator.restore(candle)
                    restored += 1
        if restored:
            logger.info(f"Restored {restored} persisted bucket(s)")

    async def run_once(self) -> int:
        """
        One iteration: poll all pairs, apply their batches, close idle buckets.

        Returns:
            Number of trades applied
        """
        self._iterations += 1

        results = await asyncio.gather(
            *(self._fetch(pair) for pair in self.pairs),
            return_exceptions=True,
        )

        applied = 0
        for pair, result in zip(self.pairs, results):
            if isinstance(result, BaseException):
                self._record_fetch_failure(pair, result)
                continue
            applied += await self._apply_batch(pair, result)

        if self.idle_close_grace is not None:
            try:
                await self.aggregator.close_expired(self.clock(), self.idle_close_grace)
            except CandlePersistenceError as e:
                self._persistence_failures += len(e.failures)

        return applied

    async def _fetch(self, pair: str) -> Sequence[TradeEvent]:
        since = self.aggregator.last_seen(pair)
        return await self.retry.execute(
            lambda: self.source.poll(pair, since),
            description=f"poll {pair} since {since}",
        )

    def _record_fetch_failure(self, pair: str, error: BaseException) -> None:
        if isinstance(error, asyncio.CancelledError):
            raise error
        if isinstance(error, RetryCancelled):
            logger.info(f"Poll for {pair} cancelled by stop request")
            return
        self._fetch_failures += 1
        if isinstance(error, RetriesExhausted):
            logger.error(
                f"Skipping {pair} this interval: {error} "
                f"(since sequence_id {self.aggregator.last_seen(pair)})"
            )
        else:
            logger.error(f"Unexpected poll failure for {pair}: {error!r}", exc_info=error)

    async def _apply_batch(self, pair: str, events: Sequence[TradeEvent]) -> int:
        """Apply one pair's batch in arrival order"""
        if not events:
            logger.debug(f"No new trades for {pair}")
            return 0

        applied = 0
        for event in events:
            try:
                outcome = await self.aggregator.apply_trade(event)
            except MalformedNumericInput as e:
                self._malformed += 1
                logger.warning(f"Rejected malformed trade: {e} {e.context}")
                continue
            except CandlePersistenceError as e:
                # Trade is applied; the dropped candles were logged for backfill
                self._persistence_failures += len(e.failures)
                applied += 1
                continue

            if outcome is AppliedOutcome.APPLIED:
                applied += 1

        logger.debug(f"Applied {applied}/{len(events)} trade(s) for {pair}")
        return applied

    async def _wait(self, seconds: float) -> None:
        """Sleep between polls, waking early on stop()"""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
