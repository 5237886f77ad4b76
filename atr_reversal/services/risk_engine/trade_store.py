"""
Open Trade Store
The set of OPEN trade records plus the append-only trade log.

Written by the execution engine (new trades) and the risk manager /
trade monitor (stop adjustments, closes). Every mutation is persisted
before it returns.
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional

from atr_reversal.shared.models import ExitReason, TradeRecord
from atr_reversal.shared.storage import JsonStore, serialize

logger = logging.getLogger(__name__)


class TradeStore:
    """Persistent open-trade set."""

    def __init__(self, store: JsonStore, open_trades_path: Path, trade_log_path: Path) -> None:
        self._store = store
        self._open_path = open_trades_path
        self._log_path = trade_log_path
        self._trades: Dict[str, TradeRecord] = {}
        self._lock = asyncio.Lock()
        self._loaded = False

    async def load(self) -> List[TradeRecord]:
        """(Re)load open trades from disk; closed entries are dropped."""
        raw = await self._store.read_json(self._open_path, [])
        records = [TradeRecord.model_validate(item) for item in raw]
        async with self._lock:
            self._trades = {r.id: r for r in records if r.is_open}
            self._loaded = True
        logger.info(f"Loaded {len(self._trades)} open trades")
        return list(self._trades.values())

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            await self.load()

    async def load_open(self) -> List[TradeRecord]:
        """Snapshot of open trades."""
        await self._ensure_loaded()
        return list(self._trades.values())

    async def get(self, trade_id: str) -> Optional[TradeRecord]:
        await self._ensure_loaded()
        return self._trades.get(trade_id)

    async def find_by_symbol(self, symbol: str) -> Optional[TradeRecord]:
        await self._ensure_loaded()
        for record in self._trades.values():
            if record.symbol == symbol:
                return record
        return None

    async def upsert(self, record: TradeRecord) -> None:
        """Insert or replace an open trade."""
        await self._ensure_loaded()
        async with self._lock:
            if record.is_open:
                self._trades[record.id] = record
            else:
                self._trades.pop(record.id, None)
            await self._save_locked()

    async def remove(self, trade_id: str) -> Optional[TradeRecord]:
        await self._ensure_loaded()
        async with self._lock:
            record = self._trades.pop(trade_id, None)
            if record is not None:
                await self._save_locked()
        return record

    async def close(
        self,
        record: TradeRecord,
        exit_price: Optional[Decimal],
        pnl: Optional[Decimal],
        reason: ExitReason,
        closed_at: Optional[datetime] = None,
    ) -> TradeRecord:
        """
        Close a trade, drop it from the open set and log it.

        Raises:
            TradeStateError: If the record was already closed
        """
        record.close(exit_price, pnl, reason, closed_at)
        await self.remove(record.id)
        await self.log_trade(record)
        logger.info(f"Closed trade in store: {record.symbol} reason={reason.value} pnl={pnl}")
        return record

    async def close_by_symbol(
        self,
        symbol: str,
        exit_price: Optional[Decimal],
        pnl: Optional[Decimal],
        reason: ExitReason = ExitReason.EXTERNAL_FILL,
    ) -> Optional[TradeRecord]:
        """Close the open trade for a symbol, if any."""
        record = await self.find_by_symbol(symbol)
        if record is None:
            return None
        return await self.close(record, exit_price, pnl, reason)

    async def log_trade(self, record: TradeRecord) -> None:
        """Append the record to the trade log."""
        await self._store.append_line(self._log_path, serialize(record))
        logger.info(f"Trade recorded: id={record.id} symbol={record.symbol} status={record.status.value}")

    async def _save_locked(self) -> None:
        await self._store.write_json(self._open_path, list(self._trades.values()))
