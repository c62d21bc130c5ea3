"""
NATS Client Adapter

Connection to the NATS bus that carries decoded swap events in and closed
candles out.

Topic Patterns:
- trades.raw.{pair}        - Decoded swap events from the chain watcher
- candles.{pair}.{tf}      - Closed candles
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

import nats
from nats.aio.client import Client as NatsConnection
from nats.aio.msg import Msg
from nats.aio.subscription import Subscription

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Msg], Awaitable[None]]


@dataclass
class NatsConfig:
    """Connection settings for the candle generator's NATS link"""
    servers: List[str] = field(default_factory=lambda: ["nats://localhost:4222"])
    name: str = "candle-generator"
    reconnect_time_wait: float = 2.0
    max_reconnect_attempts: int = -1  # Reconnect forever
    ping_interval: int = 20
    max_outstanding_pings: int = 3

    @classmethod
    def from_env(cls, prefix: str = "NATS") -> "NatsConfig":
        """Build from {prefix}_SERVERS (comma-separated) and {prefix}_CLIENT_NAME"""
        servers = os.getenv(f"{prefix}_SERVERS", "nats://localhost:4222")
        return cls(
            servers=[s.strip() for s in servers.split(",") if s.strip()],
            name=os.getenv(f"{prefix}_CLIENT_NAME", "candle-generator"),
        )


class NatsClient:
    """
    Thin wrapper around nats-py.

    Connection state is tracked from the client callbacks, so a trade
    source can tell a silent feed from a dead one and report the latter
    as a transient fetch failure.
    """

    def __init__(self, config: Optional[NatsConfig] = None):
        self.config = config or NatsConfig()
        self._nc: Optional[NatsConnection] = None
        self._subscriptions: Dict[str, Subscription] = {}
        self._connected = False

        # Metrics
        self._disconnects = 0
        self._reconnects = 0
        self._published = 0

    @property
    def is_connected(self) -> bool:
        return self._connected and self._nc is not None and self._nc.is_connected

    @property
    def stats(self) -> dict:
        return {
            "connected": self.is_connected,
            "disconnects": self._disconnects,
            "reconnects": self._reconnects,
            "published": self._published,
            "subscriptions": sorted(self._subscriptions),
        }

    async def connect(self) -> None:
        if self._connected:
            return

        try:
            self._nc = await nats.connect(
                servers=self.config.servers,
                name=self.config.name,
                reconnect_time_wait=self.config.reconnect_time_wait,
                max_reconnect_attempts=self.config.max_reconnect_attempts,
                ping_interval=self.config.ping_interval,
                max_outstanding_pings=self.config.max_outstanding_pings,
                error_cb=self._on_error,
                disconnected_cb=self._on_disconnected,
                reconnected_cb=self._on_reconnected,
                closed_cb=self._on_closed,
            )
        except Exception as e:
            logger.error(f"Could not reach NATS at {self.config.servers}: {e}")
            raise

        self._connected = True
        logger.info(f"Connected to NATS as '{self.config.name}': {self.config.servers}")

    async def _on_error(self, error: Exception) -> None:
        logger.error(f"NATS error: {error}")

    async def _on_disconnected(self) -> None:
        self._connected = False
        self._disconnects += 1
        logger.warning("NATS disconnected; trade polls will fail until it reconnects")

    async def _on_reconnected(self) -> None:
        self._connected = True
        self._reconnects += 1
        logger.info(f"NATS reconnected ({self._reconnects} reconnect(s) so far)")

    async def _on_closed(self) -> None:
        self._connected = False
        logger.warning("NATS connection closed")

    async def close(self) -> None:
        """Drain pending messages, then close"""
        if self._nc is None:
            return
        await self._nc.drain()
        await self._nc.close()
        self._connected = False
        self._subscriptions.clear()
        logger.info(f"NATS connection closed after publishing {self._published} message(s)")

    async def publish_json(self, subject: str, data: str) -> None:
        if not self.is_connected:
            raise RuntimeError(f"Cannot publish to {subject}: NATS not connected")
        payload = data.encode("utf-8")
        await self._nc.publish(subject, payload)
        self._published += 1
        logger.debug(f"Published {len(payload)} bytes to {subject}")

    async def subscribe(
        self,
        subject: str,
        callback: MessageHandler,
        queue: Optional[str] = None,
    ) -> None:
        """
        Route messages on ``subject`` (wildcards allowed) to ``callback``.

        With a queue group, each message goes to only one member of the
        group, which lets several generators split the pairs between them.
        """
        if not self.is_connected:
            raise RuntimeError(f"Cannot subscribe to {subject}: NATS not connected")
        if subject in self._subscriptions:
            logger.warning(f"Already subscribed to {subject}")
            return

        self._subscriptions[subject] = await self._nc.subscribe(
            subject, queue=queue or "", cb=callback
        )
        suffix = f" (queue: {queue})" if queue else ""
        logger.info(f"Subscribed to {subject}{suffix}")

    async def unsubscribe(self, subject: str) -> None:
        subscription = self._subscriptions.pop(subject, None)
        if subscription is None:
            return
        await subscription.unsubscribe()
        logger.info(f"Unsubscribed from {subject}")


class Topics:
    """Subject names used by the candle generator"""

    @staticmethod
    def _sanitize(name: str) -> str:
        # Subject tokens: alphanumerics, '-' and '_' only
        return "".join(c if c.isalnum() or c in "-_" else "_" for c in name)

    @staticmethod
    def trades_raw(pair: str) -> str:
        return f"trades.raw.{Topics._sanitize(pair)}"

    @staticmethod
    def all_trades() -> str:
        return "trades.raw.*"

    @staticmethod
    def candles(pair: str, timeframe: str) -> str:
        """Closed candles for one pair and timeframe"""
        return f"candles.{Topics._sanitize(pair)}.{timeframe}"
