"""
Candle Generator - Main Entry Point

Wires the event source, candle store and CandleGeneratorService from
configuration and runs until SIGINT/SIGTERM.

Exit codes: 0 after a clean stop, 1 on a startup failure or a fatal
ordering violation.
"""

import asyncio
import logging
import os
import signal
import sys

from dataflow.adapters.nats_client import NatsClient, NatsConfig
from dataflow.candle_aggregation.service import CandleGeneratorService
from dataflow.config.loader import GeneratorConfig, load_config
from dataflow.errors import CandleServiceError
from dataflow.ingestion.event_source import InMemoryEventSource, NatsTradeEventSource
from dataflow.persistence.notifying import NotifyingCandleStore
from dataflow.persistence.store import InMemoryCandleStore

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_store(config: GeneratorConfig):
    if config.store == "memory":
        return InMemoryCandleStore()

    from dataflow.persistence.timescale import TimescaleCandleStore

    return TimescaleCandleStore(config.database_url)


async def run(config: GeneratorConfig) -> int:
    """Run one service until stopped; returns the process exit code"""
    nats_client = None
    trade_source = None
    store = build_store(config)

    try:
        if hasattr(store, "connect"):
            await store.connect()
            await store.ensure_schema()

        if config.source == "nats":
            nats_client = NatsClient(NatsConfig(servers=config.nats_servers))
            await nats_client.connect()
            trade_source = NatsTradeEventSource(nats_client, pairs=config.pairs)
            await trade_source.start()
            source = trade_source
            candle_store = NotifyingCandleStore(store, nats_client)
        else:
            source = InMemoryEventSource()
            candle_store = store
    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        await _shutdown(store, nats_client, trade_source)
        return 1

    service = CandleGeneratorService(
        source,
        candle_store,
        pairs=config.pairs,
        timeframes=config.timeframes,
        poll_interval=config.poll_interval,
        max_attempts=config.max_attempts,
        base_delay=config.base_delay,
        idle_close_grace=config.idle_close_grace,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, service.stop)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(service.stop))

    exit_code = 0
    try:
        logger.info("=" * 60)
        logger.info(f"Candle generator: pairs={config.pairs} timeframes={config.timeframes}")
        logger.info("Press Ctrl+C to stop")
        logger.info("=" * 60)
        await service.start()
    except CandleServiceError as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        exit_code = 1
    finally:
        await _shutdown(store, nats_client, trade_source)

    return exit_code


async def _shutdown(store, nats_client, trade_source) -> None:
    if trade_source is not None:
        try:
            await trade_source.stop()
        except Exception as e:
            logger.warning(f"Failed to stop trade source: {e}")
    if nats_client is not None:
        await nats_client.close()
    if hasattr(store, "close"):
        await store.close()


def main() -> int:
    try:
        config = load_config()
    except CandleServiceError as e:
        logger.error(f"{e}")
        return 1
    return asyncio.run(run(config))


if __name__ == "__main__":
    sys.exit(main())
