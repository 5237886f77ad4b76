from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from atr_reversal.services.data_feed.base import MarketDataProvider
from atr_reversal.services.execution.instruments import InstrumentRegistry
from atr_reversal.shared.errors import InstrumentNotFoundError, TradeValidationError
from atr_reversal.shared.models import InstrumentConstraints


class _Feed(MarketDataProvider):
    def __init__(self, symbols: list[str]) -> None:
        super().__init__()
        self.symbols = symbols
        self.calls = 0

    async def list_instruments(self, quote_asset: str):
        self.calls += 1
        await asyncio.sleep(0)
        return [
            InstrumentConstraints(symbol=s, step_size=Decimal("0.001"), tick_size=Decimal("0.1"))
            for s in self.symbols
        ]

    async def fetch_candles(self, symbol, interval, limit, start_time=None):
        return []

    def subscribe_candles(self, symbol, interval):
        raise NotImplementedError

    async def get_latest_price(self, symbol):
        raise NotImplementedError


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 2, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def test_lookups_are_served_from_cache_until_stale() -> None:
    feed = _Feed(["BTCUSDT"])
    clock = _Clock()
    registry = InstrumentRegistry(feed, "USDT", ttl=timedelta(hours=1), clock=clock)

    async def scenario():
        await registry.get("BTCUSDT")
        await registry.get("BTCUSDT")
        calls_while_fresh = feed.calls
        clock.now += timedelta(hours=1)
        await registry.get("BTCUSDT")
        return calls_while_fresh

    assert asyncio.run(scenario()) == 1
    assert feed.calls == 2


def test_concurrent_misses_share_one_refresh() -> None:
    feed = _Feed(["BTCUSDT", "ETHUSDT"])
    registry = InstrumentRegistry(feed, "USDT", clock=_Clock())

    async def scenario():
        return await asyncio.gather(registry.get("BTCUSDT"), registry.get("ETHUSDT"))

    btc, eth = asyncio.run(scenario())

    assert (btc.symbol, eth.symbol) == ("BTCUSDT", "ETHUSDT")
    assert feed.calls == 1


def test_unknown_symbol_refreshes_then_raises() -> None:
    feed = _Feed(["BTCUSDT"])
    registry = InstrumentRegistry(feed, "USDT", clock=_Clock())

    async def scenario():
        await registry.get("BTCUSDT")
        await registry.get("DOGEUSDT")

    with pytest.raises(InstrumentNotFoundError, match="DOGEUSDT"):
        asyncio.run(scenario())
    assert feed.calls == 2
    assert issubclass(InstrumentNotFoundError, TradeValidationError)
