"""
Candle announcements

Wraps a CandleStore so every durably stored candle is also published on
candles.{pair}.{timeframe} for downstream consumers.
"""

import logging

from dataflow.adapters.nats_client import NatsClient, Topics
from dataflow.persistence.store import CandleStore
from schemas.market_data import Candle

logger = logging.getLogger(__name__)


class NotifyingCandleStore:
    """
    Store first, then publish.

    A publish failure is logged and swallowed: the candle is already
    durable and consumers can recover it from the store.
    """

    def __init__(self, store: CandleStore, nats_client: NatsClient):
        self.store = store
        self.nats = nats_client
        self._published = 0

    async def upsert_closed_candle(self, candle: Candle) -> None:
        await self.store.upsert_closed_candle(candle)

        topic = Topics.candles(candle.pair, candle.timeframe)
        try:
            await self.nats.publish_json(topic, candle.to_json())
            self._published += 1
            logger.info(
                f"Published candle: {candle.pair} {candle.timeframe} "
                f"O={candle.open} H={candle.high} L={candle.low} C={candle.close} "
                f"V={candle.volume} trades={candle.trade_count}"
            )
        except Exception as e:
            logger.warning(f"Failed to publish candle on {topic}: {e}")

    async def load_last_known_bucket(self, pair: str, timeframe: str):
        loader = getattr(self.store, "load_last_known_bucket", None)
        if loader is None:
            return None
        return await loader(pair, timeframe)
