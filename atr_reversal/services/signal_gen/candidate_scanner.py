"""
Volatility Candidate Scanner
Flags instruments whose first intraday candle moved far relative to ATR.

Runs once per day after the first scan-interval candle of the UTC day
closes. Symbols already traded in the current cycle are skipped.
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from atr_reversal.services.data_feed.base import MarketDataProvider
from atr_reversal.services.risk_engine.trade_cycle import TradeCycle
from atr_reversal.services.signal_gen.atr_service import AtrCache
from atr_reversal.shared.clock import interval_to_timedelta, utc_day_start, utc_now
from atr_reversal.shared.models import AtrSnapshot, TradeSide, VolatilityCandidate

logger = logging.getLogger(__name__)


class CandidateScanner:
    """Selects volatility candidates from the ATR cache."""

    def __init__(
        self,
        feed: MarketDataProvider,
        cycle: TradeCycle,
        interval: str = "15m",
        range_atr_ratio: Decimal = Decimal("0.25"),
        concurrency: int = 5,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._feed = feed
        self._cycle = cycle
        self._interval = interval
        self._interval_length = interval_to_timedelta(interval)
        self._ratio = range_atr_ratio
        self._concurrency = concurrency
        self._clock = clock

    async def scan(self, atr_cache: AtrCache) -> List[VolatilityCandidate]:
        """
        Scan every cached symbol.

        Returns:
            Accepted candidates, largest range first
        """
        if not atr_cache:
            return []

        state = await self._cycle.current()
        traded = set(state.traded_symbols)
        day_start = utc_day_start(self._clock())
        semaphore = asyncio.Semaphore(self._concurrency)

        async def check(snapshot: AtrSnapshot) -> Optional[VolatilityCandidate]:
            if snapshot.symbol in traded:
                logger.info(f"Skipping candidate already traded this cycle: {snapshot.symbol}")
                return None
            async with semaphore:
                return await self._check_one(snapshot, day_start)

        results = await asyncio.gather(*(check(s) for s in atr_cache.values()))
        candidates = [c for c in results if c is not None]
        candidates.sort(key=lambda c: c.range, reverse=True)

        logger.info(f"Scan complete: {len(candidates)} candidates out of {len(atr_cache)} symbols")
        return candidates

    async def _check_one(
        self, snapshot: AtrSnapshot, day_start: datetime
    ) -> Optional[VolatilityCandidate]:
        symbol = snapshot.symbol
        try:
            candles = await self._feed.fetch_candles(
                symbol, self._interval, 1, start_time=day_start
            )
        except Exception as e:
            logger.error(f"Failed to scan volatility for {symbol}: {e}")
            return None

        if not candles:
            return None
        candle = candles[0]

        if candle.open_time != day_start:
            logger.warning(
                f"First {self._interval} candle for {symbol} not aligned to day start: "
                f"open_time={candle.open_time.isoformat()} expected={day_start.isoformat()}"
            )
            return None
        if self._clock() < day_start + self._interval_length:
            logger.warning(f"First {self._interval} candle for {symbol} is not closed yet")
            return None
        if candle.close == candle.open:
            return None

        candle_range = candle.range
        if candle_range <= snapshot.atr * self._ratio:
            return None

        # A falling candle is expected to reverse upward
        side = TradeSide.BUY if candle.close < candle.open else TradeSide.SELL
        logger.info(
            f"Candidate {symbol}: range={candle_range} atr={snapshot.atr} bias={side.value}"
        )
        return VolatilityCandidate(
            symbol=symbol,
            atr=snapshot.atr,
            range=candle_range,
            preferred_side=side,
            reference_candle=candle,
        )
