"""
Abstract Market Data Interface
Instrument listing, candle history, latest price and closed-candle
subscriptions.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, List, Optional

from atr_reversal.shared.models import Candle, InstrumentConstraints

logger = logging.getLogger(__name__)

_STOP = object()


class CandleSubscription(ABC):
    """
    Scoped subscription to closed candles of one symbol/interval.

    Lifetime is explicit: ``start()`` opens the underlying feed,
    ``deliver()`` is called by the transport for every candle, and
    ``stop()`` unsubscribes and ends iteration. Usable as an async
    context manager, which guarantees ``stop()``.
    """

    def __init__(self, symbol: str, interval: str) -> None:
        self.symbol = symbol
        self.interval = interval
        self._queue: asyncio.Queue = asyncio.Queue()
        self._started = False
        self._stopped = False

    @property
    def topic(self) -> str:
        """Stream topic name, e.g. ``btcusdt@kline_5m``."""
        return f"{self.symbol.lower()}@kline_{self.interval}"

    @property
    def is_active(self) -> bool:
        return self._started and not self._stopped

    async def start(self) -> None:
        """Open the underlying feed."""
        if self._started:
            return
        self._started = True
        await self._open()
        logger.info(f"Subscribed to {self.topic}")

    def deliver(self, candle: Candle) -> None:
        """Hand a closed candle to the consumer."""
        if self._stopped:
            return
        self._queue.put_nowait(candle)

    async def stop(self) -> None:
        """Unsubscribe from the underlying feed; idempotent."""
        if self._stopped:
            return
        self._stopped = True
        self._queue.put_nowait(_STOP)
        try:
            await self._close()
        finally:
            logger.info(f"Unsubscribed from {self.topic}")

    async def __aenter__(self) -> "CandleSubscription":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def __aiter__(self) -> AsyncIterator[Candle]:
        while True:
            item = await self._queue.get()
            if item is _STOP:
                return
            yield item

    @abstractmethod
    async def _open(self) -> None:
        """Start the transport feeding ``deliver()``."""
        pass

    @abstractmethod
    async def _close(self) -> None:
        """Stop the transport and release its listener."""
        pass


class MarketDataProvider(ABC):
    """
    Abstract base class for market data providers.
    """

    def __init__(self) -> None:
        self._running = False

    @property
    def is_running(self) -> bool:
        """Check if provider is running."""
        return self._running

    @abstractmethod
    async def list_instruments(self, quote_asset: str) -> List[InstrumentConstraints]:
        """
        List tradable instruments quoted in ``quote_asset``.

        Returns:
            Constraints for every tradable instrument
        """
        pass

    @abstractmethod
    async def fetch_candles(
        self,
        symbol: str,
        interval: str,
        limit: int,
        start_time: Optional[datetime] = None,
    ) -> List[Candle]:
        """
        Fetch the most recent candles, oldest first.

        Args:
            symbol: Instrument symbol
            interval: Candle interval (5m, 15m, 1d)
            limit: Maximum number of candles
            start_time: Optional first open time

        Raises:
            DataFeedError: On transport or exchange failure
        """
        pass

    @abstractmethod
    def subscribe_candles(self, symbol: str, interval: str) -> CandleSubscription:
        """Create a (not yet started) closed-candle subscription."""
        pass

    @abstractmethod
    async def get_latest_price(self, symbol: str) -> Decimal:
        """Latest traded price for a symbol."""
        pass

    async def start(self) -> None:
        """Start the provider."""
        self._running = True

    async def stop(self) -> None:
        """Stop the provider."""
        self._running = False
