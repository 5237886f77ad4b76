"""
Trade Cycle Ledger
Per-UTC-day record of symbols that already traded.

The scanner reads it to skip symbols; the execution engine claims a
symbol before trading it. ``claim`` is an atomic check-and-mark, so two
concurrent intents for one symbol produce exactly one execution.
"""

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Set

from atr_reversal.shared.clock import utc_day, utc_now
from atr_reversal.shared.models import TradeCycleState
from atr_reversal.shared.storage import JsonStore

logger = logging.getLogger(__name__)


class TradeCycle:
    """File-backed daily trade gate."""

    def __init__(
        self,
        store: JsonStore,
        path: Path,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._path = path
        self._clock = clock
        self._lock = asyncio.Lock()
        self._pending: Set[str] = set()  # claimed, execution in flight

    async def current(self) -> TradeCycleState:
        """Today's ledger, resetting it on the first access of a new UTC day."""
        async with self._lock:
            return await self._current_locked()

    async def _current_locked(self) -> TradeCycleState:
        today = utc_day(self._clock())
        raw = await self._store.read_json(self._path, None)
        stored = TradeCycleState.model_validate(raw) if raw else None

        if stored is None or stored.day != today:
            fresh = TradeCycleState(day=today)
            await self._store.write_json(self._path, fresh)
            if stored is not None:
                logger.info(f"Reset trade cycle: {stored.day} -> {today}")
            return fresh
        return stored

    async def has_traded(self, symbol: str) -> bool:
        state = await self.current()
        return symbol in state.traded_symbols

    async def claim(self, symbol: str) -> bool:
        """
        Reserve a symbol for execution.

        Returns:
            False if it already traded today or another execution holds it
        """
        async with self._lock:
            state = await self._current_locked()
            if symbol in state.traded_symbols or symbol in self._pending:
                return False
            self._pending.add(symbol)
            return True

    async def release(self, symbol: str) -> None:
        """Drop a reservation after a failed execution."""
        async with self._lock:
            self._pending.discard(symbol)

    async def commit(self, symbol: str) -> None:
        """Persist a symbol as traded and drop its reservation."""
        async with self._lock:
            state = await self._current_locked()
            self._pending.discard(symbol)
            if symbol in state.traded_symbols:
                return
            state.traded_symbols.append(symbol)
            await self._store.write_json(self._path, state)
        logger.info(f"Marked symbol as traded: {symbol} day={state.day}")

    async def mark_traded(self, symbol: str) -> None:
        """Mark without a prior claim (manual / reconciliation use)."""
        await self.commit(symbol)
