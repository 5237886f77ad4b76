"""
ATR Cache Service
Daily ATR computation for every tradable instrument, cached on disk.
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Optional

from atr_reversal.services.data_feed.base import MarketDataProvider
from atr_reversal.shared.clock import utc_day, utc_now
from atr_reversal.shared.models import AtrSnapshot
from atr_reversal.shared.storage import JsonStore
from atr_reversal.strategies.atr import calculate_atr

logger = logging.getLogger(__name__)

AtrCache = Dict[str, AtrSnapshot]

DAILY_INTERVAL = "1d"


class AtrService:
    """
    Builds and serves the ATR cache.

    ``get_or_refresh`` is the read-through entry point: the on-disk
    cache is reused while it belongs to the current UTC day.
    """

    def __init__(
        self,
        feed: MarketDataProvider,
        store: JsonStore,
        path: Path,
        quote_asset: str = "USDT",
        period: int = 14,
        concurrency: int = 8,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._feed = feed
        self._store = store
        self._path = path
        self._quote_asset = quote_asset
        self._period = period
        self._concurrency = concurrency
        self._clock = clock

    async def load(self) -> AtrCache:
        """Read the cache from disk (empty if absent)."""
        raw = await self._store.read_json(self._path, {})
        return {symbol: AtrSnapshot.model_validate(item) for symbol, item in raw.items()}

    async def save(self, cache: AtrCache) -> None:
        await self._store.write_json(self._path, cache)

    async def get_or_refresh(self) -> AtrCache:
        """Cached ATRs, refreshed when empty or from a previous day."""
        cache = await self.load()
        today = utc_day(self._clock())
        if not cache or any(snapshot.day != today for snapshot in cache.values()):
            return await self.refresh()
        return cache

    async def refresh(self) -> AtrCache:
        """
        Recompute ATR for every tradable instrument.

        Per-symbol failures are logged and skipped; the batch continues.
        """
        instruments = await self._feed.list_instruments(self._quote_asset)
        day = utc_day(self._clock())
        semaphore = asyncio.Semaphore(self._concurrency)

        logger.info(f"Refreshing ATR cache: {len(instruments)} symbols")

        async def compute(symbol: str) -> Optional[AtrSnapshot]:
            async with semaphore:
                return await self._compute_one(symbol, day)

        results = await asyncio.gather(*(compute(i.symbol) for i in instruments))
        cache: AtrCache = {s.symbol: s for s in results if s is not None}

        await self.save(cache)
        logger.info(f"ATR cache refreshed: {len(cache)} symbols")
        return cache

    async def _compute_one(self, symbol: str, day: str) -> Optional[AtrSnapshot]:
        try:
            candles = await self._feed.fetch_candles(symbol, DAILY_INTERVAL, self._period + 2)
            if len(candles) <= self._period:
                logger.debug(f"Not enough daily candles for {symbol}: {len(candles)}")
                return None
            atr = calculate_atr(candles, self._period)
        except Exception as e:
            logger.error(f"Failed to calculate ATR for {symbol}: {e}")
            return None

        if atr <= Decimal("0"):
            return None
        return AtrSnapshot(symbol=symbol, atr=atr, day=day, calculated_at=self._clock())
