"""Tests for the entry point wiring."""

import asyncio

from dataflow.candle_aggregation import main as entry
from dataflow.config.loader import GeneratorConfig
from dataflow.persistence.store import InMemoryCandleStore
from dataflow.persistence.timescale import TimescaleCandleStore


def test_build_store():
    assert isinstance(entry.build_store(GeneratorConfig(pairs=["cUSD_CELO"], store="memory")), InMemoryCandleStore)
    assert isinstance(entry.build_store(GeneratorConfig(pairs=["cUSD_CELO"])), TimescaleCandleStore)


def test_startup_failure_exits_nonzero(monkeypatch):
    closed = []

    class UnreachableStore(InMemoryCandleStore):
        async def connect(self):
            raise OSError("connection refused")

        async def ensure_schema(self):
            pass

        async def close(self):
            closed.append(True)

    monkeypatch.setattr(entry, "build_store", lambda config: UnreachableStore())
    config = GeneratorConfig(pairs=["cUSD_CELO"], source="memory")

    assert asyncio.run(entry.run(config)) == 1
    assert closed == [True]


def test_invalid_config_exits_nonzero(monkeypatch):
    monkeypatch.delenv("CONFIG_PATH", raising=False)
    monkeypatch.delenv("CANDLE_PAIRS", raising=False)
    assert entry.main() == 1
