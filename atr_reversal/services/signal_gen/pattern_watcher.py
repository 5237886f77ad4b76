"""
Streaming Pattern Watcher
Watches closed candles of each candidate for a confirming reversal.

Each candidate gets its own subscription and a two-candle window. The
watch ends after one intent, when the monitoring window elapses, or
when the consumer stops iterating; the subscription is always stopped.
"""

import asyncio
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Deque, Iterable, Optional, Sequence

from atr_reversal.services.data_feed.base import CandleSubscription, MarketDataProvider
from atr_reversal.shared.clock import utc_now
from atr_reversal.shared.models import Candle, TradeIntent, TradeSide, VolatilityCandidate
from atr_reversal.strategies.candle_patterns import detect_signal

logger = logging.getLogger(__name__)

WINDOW_SIZE = 2


def evaluate_window(
    candidate: VolatilityCandidate,
    window: Sequence[Candle],
    clock: Callable[[], datetime] = utc_now,
) -> Optional[TradeIntent]:
    """
    Turn a full candle window into an intent, if it confirms the bias.

    The pattern must point the candidate's preferred way, and the latest
    close must have pulled back past the reference close (below it for a
    BUY bias, above it for SELL).
    """
    if len(window) != WINDOW_SIZE:
        return None

    signal = detect_signal(window)
    if signal is None or signal.side != candidate.preferred_side:
        return None

    latest = window[-1]
    reference_close = candidate.reference_candle.close
    if candidate.preferred_side == TradeSide.BUY and not latest.close < reference_close:
        return None
    if candidate.preferred_side == TradeSide.SELL and not latest.close > reference_close:
        return None

    return TradeIntent(
        symbol=candidate.symbol,
        side=signal.side,
        entry=latest.close,
        atr=candidate.atr,
        signal=signal,
        created_at=clock(),
    )


class PatternWatcher:
    """Concurrent per-candidate pattern watches."""

    def __init__(
        self,
        feed: MarketDataProvider,
        interval: str = "5m",
        monitor_window: timedelta = timedelta(minutes=90),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._feed = feed
        self._interval = interval
        self._monitor_window = monitor_window
        self._clock = clock

    async def watch(self, candidates: Iterable[VolatilityCandidate]) -> AsyncIterator[TradeIntent]:
        """
        Yield intents as candidates confirm, in confirmation order.

        Closing the iterator early cancels every watch still running.
        """
        pending = {
            asyncio.create_task(self.watch_one(c), name=f"watch-{c.symbol}")
            for c in candidates
        }
        if not pending:
            return

        logger.info(f"Watching {len(pending)} candidates for {self._monitor_window}")
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    intent = task.result()
                    if intent is not None:
                        yield intent
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    async def watch_one(self, candidate: VolatilityCandidate) -> Optional[TradeIntent]:
        """Watch one candidate until it confirms or its window elapses."""
        subscription = self._feed.subscribe_candles(candidate.symbol, self._interval)
        try:
            async with subscription:
                return await asyncio.wait_for(
                    self._consume(candidate, subscription),
                    timeout=self._monitor_window.total_seconds(),
                )
        except asyncio.TimeoutError:
            logger.info(f"Monitoring window elapsed for {candidate.symbol} without a signal")
            return None
        except Exception as e:
            logger.error(f"Pattern watch failed for {candidate.symbol}: {e}")
            return None

    async def _consume(
        self, candidate: VolatilityCandidate, subscription: CandleSubscription
    ) -> Optional[TradeIntent]:
        window: Deque[Candle] = deque(maxlen=WINDOW_SIZE)
        last_close_time: Optional[datetime] = None

        async for candle in subscription:
            if last_close_time is not None and candle.close_time <= last_close_time:
                logger.debug(
                    f"Dropping out-of-order candle for {candle.symbol}: "
                    f"{candle.close_time.isoformat()}"
                )
                continue
            last_close_time = candle.close_time
            window.append(candle)

            intent = evaluate_window(candidate, list(window), self._clock)
            if intent is not None:
                logger.info(
                    f"Signal {intent.signal.value} on {intent.symbol}: "
                    f"side={intent.side.value} entry={intent.entry}"
                )
                return intent
        return None
