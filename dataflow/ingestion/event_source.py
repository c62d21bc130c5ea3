"""
Trade Event Sources

Poll-style access to on-chain trade events. The service asks each source
for "events for pair P newer than sequence id S" on every loop iteration.

Implementations:
- InMemoryEventSource: appendable replay buffer (tests, backfills)
- NatsTradeEventSource: buffers trades pushed on trades.raw.{pair}
"""

import logging
from collections import defaultdict, deque
from typing import Deque, Dict, Iterable, List, Optional, Protocol, Sequence, runtime_checkable

from dataflow.adapters.nats_client import NatsClient, Topics
from dataflow.errors import TransientFetchError
from schemas.market_data import TradeEvent

logger = logging.getLogger(__name__)


@runtime_checkable
class EventSource(Protocol):
    """
    Protocol for trade event sources.

    ``poll`` returns events with sequence_id > since_sequence_id (all
    events when it is None) in non-decreasing (occurred_at, sequence_id)
    order, and raises TransientFetchError on network/RPC failure.
    """

    async def poll(self, pair: str, since_sequence_id: Optional[int]) -> Sequence[TradeEvent]:
        ...


def _newer_than(events: Iterable[TradeEvent], since: Optional[int]) -> List[TradeEvent]:
    if since is None:
        return list(events)
    return [e for e in events if e.sequence_id > since]


class InMemoryEventSource:
    """
    Event source over an in-process list of trades.

    Example usage:
        source = InMemoryEventSource()
        source.extend([trade_1, trade_2])
        events = await source.poll("cUSD_CELO", None)
    """

    def __init__(self, events: Optional[Iterable[TradeEvent]] = None):
        self._events: Dict[str, List[TradeEvent]] = defaultdict(list)
        self.polls = 0
        if events:
            self.extend(events)

    def append(self, event: TradeEvent) -> None:
        self._events[event.pair].append(event)

    def extend(self, events: Iterable[TradeEvent]) -> None:
        for event in events:
            self.append(event)

    async def poll(self, pair: str, since_sequence_id: Optional[int]) -> List[TradeEvent]:
        self.polls += 1
        return _newer_than(self._events.get(pair, ()), since_sequence_id)


class NatsTradeEventSource:
    """
    Buffers trade events pushed over NATS and serves them by polling.

    Each pair keeps a bounded deque; events at or below the sequence id a
    poll asks for are pruned, since the caller has already applied them.
    Malformed messages are logged and dropped one at a time.
    """

    def __init__(
        self,
        nats_client: NatsClient,
        pairs: Optional[Iterable[str]] = None,
        buffer_size: int = 10000,
        queue: Optional[str] = None,
    ):
        self.nats = nats_client
        self.pairs = set(pairs) if pairs else None
        self.buffer_size = buffer_size
        self.queue = queue
        self._buffers: Dict[str, Deque[TradeEvent]] = defaultdict(
            lambda: deque(maxlen=self.buffer_size)
        )

        # Metrics
        self._received = 0
        self._rejected = 0
        self._overflowed = 0

    @property
    def stats(self) -> dict:
        return {
            "received": self._received,
            "rejected": self._rejected,
            "overflowed": self._overflowed,
            "buffered": {pair: len(buf) for pair, buf in self._buffers.items()},
        }

    async def start(self) -> None:
        """Subscribe to trade topics"""
        if self.pairs:
            for pair in sorted(self.pairs):
                await self.nats.subscribe(Topics.trades_raw(pair), self._handle_trade, queue=self.queue)
        else:
            await self.nats.subscribe(Topics.all_trades(), self._handle_trade, queue=self.queue)
        logger.info("NATS trade source started")

    async def stop(self) -> None:
        if self.pairs:
            for pair in sorted(self.pairs):
                await self.nats.unsubscribe(Topics.trades_raw(pair))
        else:
            await self.nats.unsubscribe(Topics.all_trades())
        logger.info("NATS trade source stopped")

    async def _handle_trade(self, msg) -> None:
        """Handle incoming trade message"""
        try:
            event = TradeEvent.from_json(msg.data.decode())
        except (KeyError, ValueError, UnicodeDecodeError) as e:
            self._rejected += 1
            logger.warning(f"Dropped malformed trade on {getattr(msg, 'subject', '?')}: {e}")
            return

        if self.pairs is not None and event.pair not in self.pairs:
            logger.debug(f"Ignoring trade for untracked pair {event.pair}")
            return

        buffer = self._buffers[event.pair]
        if len(buffer) == buffer.maxlen:
            self._overflowed += 1
            logger.error(
                f"Trade buffer full for {event.pair}; evicting sequence_id "
                f"{buffer[0].sequence_id}"
            )
        buffer.append(event)
        self._received += 1
        logger.debug(f"Received trade: {event.pair} #{event.sequence_id} @ {event.price}")

    async def poll(self, pair: str, since_sequence_id: Optional[int]) -> List[TradeEvent]:
        if not self.nats.is_connected:
            raise TransientFetchError(
                "NATS feed disconnected",
                context={"pair": pair, "since_sequence_id": since_sequence_id},
            )

        buffer = self._buffers.get(pair)
        if not buffer:
            return []

        if since_sequence_id is not None:
            while buffer and buffer[0].sequence_id <= since_sequence_id:
                buffer.popleft()
        return sorted(buffer, key=lambda e: (e.occurred_at, e.sequence_id))
