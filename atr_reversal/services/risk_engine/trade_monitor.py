"""
Trade Monitor
Closes tracked trades when the exchange reports a filled reduce-only order
(protective stop, manual close, or the risk manager's own market exit).
"""

import asyncio
import logging
from typing import Optional, Set

from atr_reversal.services.execution.base import BrokerAdapter
from atr_reversal.services.monitoring.notifier import Notifier
from atr_reversal.services.risk_engine.trade_store import TradeStore
from atr_reversal.shared.models import ExitReason, OrderStatus, OrderUpdate, TradeRecord, TradeSide

logger = logging.getLogger(__name__)


def format_close_message(update: OrderUpdate) -> str:
    direction = "Close Short" if update.side == TradeSide.BUY else "Close Long"
    return "\n".join(
        [
            f"Trade closed {update.symbol}",
            direction,
            f"Price: {update.average_price}",
            f"Qty: {update.quantity}",
            f"PnL: {update.realized_profit}",
        ]
    )


class TradeMonitor:
    """Order-update listener attached to the broker's push callback."""

    def __init__(self, broker: BrokerAdapter, trades: TradeStore, notifier: Notifier) -> None:
        self._broker = broker
        self._trades = trades
        self._notifier = notifier
        self._tasks: Set[asyncio.Task] = set()

    def start(self) -> None:
        """Register with the broker; updates are handled in background tasks."""
        self._broker.set_on_order_update_callback(self._on_order_update)
        logger.info("Trade monitor listening for order updates")

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    def _on_order_update(self, update: OrderUpdate) -> None:
        if update.status != OrderStatus.FILLED or not update.reduce_only:
            return
        task = asyncio.create_task(self.handle_update(update))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def handle_update(self, update: OrderUpdate) -> Optional[TradeRecord]:
        """
        Close the open trade matching a filled reduce-only order.

        Fills for trades that are no longer tracked (the risk manager's own
        market exits) are logged without a second notification.
        """
        try:
            record = await self._trades.close_by_symbol(
                update.symbol,
                update.average_price,
                update.realized_profit,
                ExitReason.EXTERNAL_FILL,
            )
        except Exception as e:
            logger.error(f"Failed to record close for {update.symbol}: {e}")
            await self._notifier.send(format_close_message(update))
            return None

        if record is None:
            logger.info(f"Reduce-only fill for untracked {update.symbol}: pnl={update.realized_profit}")
            return None

        logger.info(f"Trade closed {update.symbol}: pnl={update.realized_profit}")
        await self._notifier.send(format_close_message(update))
        return record
