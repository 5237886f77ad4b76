"""
Position & Risk Manager
Periodic reconciliation of open trades against live positions, with
layered exit rules.

Exit order per position, first match wins:
    1. time exit      - held for TIME_BASED_EXIT_HOURS or longer
    2. hard stop      - portfolio P&L fraction <= -STOP_LOSS_BALANCE_PCT
    3. profit trigger - P&L fraction >= PROFIT_TRIGGER_PCT sets the floor
    4. floor breach   - P&L fraction back at or below the floor
"""

import asyncio
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional, Tuple

from atr_reversal.services.execution.base import BrokerAdapter
from atr_reversal.services.monitoring.notifier import Notifier
from atr_reversal.services.risk_engine.trade_store import TradeStore
from atr_reversal.shared.clock import utc_now
from atr_reversal.shared.config import StrategySettings
from atr_reversal.shared.errors import OrderError
from atr_reversal.shared.models import (
    ExitReason,
    OrderRequest,
    OrderType,
    PortfolioSnapshot,
    PositionInfo,
    PositionPnl,
    TradeRecord,
    TradeSide,
)

logger = logging.getLogger(__name__)

MIN_CHECK_INTERVAL_SEC = 5


class PositionManager:
    """
    Enforces exits on every open trade at a fixed interval.

    Trades whose exchange position is gone (or zero) were closed outside
    the agent; they are reconciled out of the open set, not treated as
    errors.
    """

    def __init__(
        self,
        broker: BrokerAdapter,
        trades: TradeStore,
        notifier: Notifier,
        settings: StrategySettings,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._broker = broker
        self._trades = trades
        self._notifier = notifier
        self._settings = settings
        self._clock = clock
        self._sleep = sleep
        self._max_hold = timedelta(hours=float(settings.time_based_exit_hours))

    @property
    def interval(self) -> int:
        """Seconds between checks."""
        return max(self._settings.position_check_interval_sec, MIN_CHECK_INTERVAL_SEC)

    async def run_forever(self) -> None:
        """Check positions until cancelled; a failed tick never stops the loop."""
        logger.info(f"Started position manager: interval={self.interval}s")
        while True:
            try:
                await self.evaluate()
            except Exception as e:
                logger.error(f"Position monitor failed: {e}")
            await self._sleep(self.interval)

    async def evaluate(self) -> PortfolioSnapshot:
        """Run one risk tick."""
        records = await self._trades.load_open()
        if not records:
            return PortfolioSnapshot(balance=Decimal("0"), timestamp=self._clock())

        balance = await self._broker.get_available_balance(self._settings.quote_asset)
        live = {p.symbol: p for p in await self._broker.get_positions()}
        snapshot = PortfolioSnapshot(balance=balance, timestamp=self._clock())

        matched: List[Tuple[TradeRecord, PositionInfo]] = []
        for record in records:
            position = live.get(record.symbol)
            if position is None or position.amount == 0:
                try:
                    if await self._reconcile_external_close(record, position):
                        snapshot.closed_trade_ids.append(record.id)
                except Exception as e:
                    logger.error(f"Reconciliation failed for {record.symbol}: {e}")
                continue
            if (position.amount > 0) != (record.side == TradeSide.BUY):
                logger.warning(
                    f"Position side mismatch for {record.symbol}: "
                    f"trade={record.side.value} amount={position.amount}"
                )
                continue
            matched.append((record, position))
            snapshot.positions.append(self._position_pnl(record, position, balance))

        for record, position in matched:
            try:
                await self._apply_rules(record, position, snapshot)
            except Exception as e:
                logger.error(f"Risk check failed for {record.symbol}: {e}")

        logger.debug(
            f"Risk tick: open={len(snapshot.positions)} balance={balance} "
            f"pnl={snapshot.total_pnl} ({snapshot.pnl_fraction:.4f})"
        )
        return snapshot

    @staticmethod
    def _position_pnl(record: TradeRecord, position: PositionInfo, balance: Decimal) -> PositionPnl:
        fraction = position.unrealized_pnl / balance if balance > 0 else Decimal("0")
        return PositionPnl(
            trade_id=record.id,
            symbol=record.symbol,
            mark_price=position.mark_price,
            unrealized_pnl=position.unrealized_pnl,
            pnl_fraction=fraction,
        )

    async def _apply_rules(
        self, record: TradeRecord, position: PositionInfo, snapshot: PortfolioSnapshot
    ) -> None:
        settings = self._settings
        pnl = self._find_pnl(snapshot, record.id)
        fraction = pnl.pnl_fraction if pnl else Decimal("0")

        if self._clock() - record.opened_at >= self._max_hold:
            await self._close_position(record, position, snapshot, ExitReason.TIME_EXIT)
            await self._notifier.send(
                f"Closed {record.symbol} due to time limit ({settings.time_based_exit_hours}h)"
            )
            return

        portfolio_fraction = snapshot.pnl_fraction
        if portfolio_fraction <= -settings.stop_loss_balance_pct:
            await self._close_position(record, position, snapshot, ExitReason.STOP_LOSS)
            await self._notifier.send(
                f"Closed {record.symbol}: portfolio stop-loss hit ({portfolio_fraction:.2%})"
            )
            return

        if not record.profit_lock_applied and fraction >= settings.profit_trigger_pct:
            floor = settings.profit_trigger_pct * settings.lock_percent_of_trigger
            record.profit_floor = floor
            record.profit_lock_applied = True
            await self._trades.upsert(record)
            logger.info(f"Locked profit on {record.symbol}: floor={floor} pnl={fraction}")
            await self._notifier.send(
                f"Locked profit on {record.symbol}: floor set to {floor:.2%} "
                f"after reaching {fraction:.2%}"
            )
            return

        if (
            record.profit_lock_applied
            and record.profit_floor is not None
            and fraction <= record.profit_floor
        ):
            await self._close_position(record, position, snapshot, ExitReason.PROFIT_FLOOR)
            await self._notifier.send(
                f"Closed {record.symbol}: P&L fell back to profit floor "
                f"({fraction:.2%} <= {record.profit_floor:.2%})"
            )

    @staticmethod
    def _find_pnl(snapshot: PortfolioSnapshot, trade_id: str) -> Optional[PositionPnl]:
        for pnl in snapshot.positions:
            if pnl.trade_id == trade_id:
                return pnl
        return None

    async def _close_position(
        self,
        record: TradeRecord,
        position: PositionInfo,
        snapshot: PortfolioSnapshot,
        reason: ExitReason,
    ) -> None:
        """Market-close with a reduce-only order and retire the record."""
        report = await self._broker.submit_order(
            OrderRequest(
                symbol=record.symbol,
                side=record.side.opposite,
                order_type=OrderType.MARKET,
                quantity=abs(position.amount),
                reduce_only=True,
            )
        )
        exit_price = report.average_price if report.average_price > 0 else position.mark_price
        pnl = position.unrealized_pnl
        await self._cancel_resting_orders(record.symbol)

        # Move this position's P&L from unrealized to realized for the rest of the tick
        snapshot.positions = [p for p in snapshot.positions if p.trade_id != record.id]
        snapshot.realized_pnl += pnl
        snapshot.closed_trade_ids.append(record.id)

        if not record.is_open:
            logger.info(f"{record.symbol} already closed by its fill update")
            return
        await self._trades.close(record, exit_price, pnl, reason, closed_at=self._clock())
        logger.info(f"Closed {record.symbol}: reason={reason.value} exit={exit_price} pnl={pnl}")

    async def _reconcile_external_close(
        self, record: TradeRecord, position: Optional[PositionInfo]
    ) -> bool:
        """Retire a trade whose exchange position is gone; False if already closed."""
        if not record.is_open:
            logger.info(f"{record.symbol} already closed by its fill update")
            return False
        await self._cancel_resting_orders(record.symbol)
        exit_price = position.mark_price if position and position.mark_price > 0 else None
        await self._trades.close(
            record, exit_price, None, ExitReason.EXCHANGE_CLOSED, closed_at=self._clock()
        )
        logger.info(f"No live position for {record.symbol}; trade {record.id} reconciled as closed")
        return True

    async def _cancel_resting_orders(self, symbol: str) -> None:
        # closePosition stops stay on the book after the position is gone
        try:
            await self._broker.cancel_open_orders(symbol)
        except OrderError as e:
            logger.warning(f"Failed to cancel resting orders for {symbol}: {e}")
