"""
Instrument Constraint Cache
Read-through cache of exchange quantization rules.

Contract: a lookup is served from memory while the snapshot is younger
than the TTL; a miss or a stale snapshot triggers one refresh of the
whole instrument list, shared by concurrent callers.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from atr_reversal.services.data_feed.base import MarketDataProvider
from atr_reversal.shared.errors import InstrumentNotFoundError
from atr_reversal.shared.clock import utc_now
from atr_reversal.shared.models import InstrumentConstraints

logger = logging.getLogger(__name__)


class InstrumentRegistry:
    """Shared, lazily refreshed instrument metadata."""

    def __init__(
        self,
        feed: MarketDataProvider,
        quote_asset: str,
        ttl: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._feed = feed
        self._quote_asset = quote_asset
        self._ttl = ttl
        self._clock = clock
        self._instruments: Dict[str, InstrumentConstraints] = {}
        self._refreshed_at: Optional[datetime] = None
        self._lock = asyncio.Lock()

    @property
    def is_stale(self) -> bool:
        if self._refreshed_at is None:
            return True
        return self._clock() - self._refreshed_at >= self._ttl

    async def refresh(self) -> Dict[str, InstrumentConstraints]:
        """Reload the full instrument list."""
        instruments = await self._feed.list_instruments(self._quote_asset)
        self._instruments = {i.symbol: i for i in instruments}
        self._refreshed_at = self._clock()
        logger.info(f"Instrument metadata refreshed: {len(self._instruments)} symbols")
        return dict(self._instruments)

    async def get(self, symbol: str) -> InstrumentConstraints:
        """
        Constraints for one symbol, refreshing on miss or staleness.

        Raises:
            InstrumentNotFoundError: If the symbol is unknown after refresh
        """
        if not self.is_stale and symbol in self._instruments:
            return self._instruments[symbol]

        async with self._lock:
            # Another waiter may have refreshed already
            if self.is_stale or symbol not in self._instruments:
                await self.refresh()

        constraints = self._instruments.get(symbol)
        if constraints is None:
            raise InstrumentNotFoundError(f"Symbol metadata not found for {symbol}")
        return constraints
