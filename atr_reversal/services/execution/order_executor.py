"""
Trade Execution Engine
Turns a trade intent into a sized, chased entry and an OPEN trade record.

Flow:
    claim symbol in the cycle ledger -> constraints -> size -> leverage
    -> chase limit orders -> protective stop -> persist -> commit ledger
"""

import asyncio
import logging
from decimal import Decimal
from typing import Awaitable, Callable

from atr_reversal.services.data_feed.base import MarketDataProvider
from atr_reversal.services.execution.base import BrokerAdapter
from atr_reversal.services.execution.instruments import InstrumentRegistry
from atr_reversal.services.monitoring.notifier import Notifier
from atr_reversal.services.risk_engine.trade_cycle import TradeCycle
from atr_reversal.services.risk_engine.trade_store import TradeStore
from atr_reversal.shared.config import StrategySettings
from atr_reversal.shared.errors import CycleConflictError, OrderError
from atr_reversal.shared.models import (
    FillSummary,
    InstrumentConstraints,
    OrderReport,
    OrderRequest,
    OrderType,
    TradeIntent,
    TradeRecord,
    TradeSide,
)

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


def size_position(
    balance: Decimal,
    position_size_pct: Decimal,
    leverage: int,
    entry: Decimal,
    constraints: InstrumentConstraints,
) -> Decimal:
    """
    Quantity for a new position: balance x size fraction x leverage / entry.

    Raises:
        TradeValidationError: If the floored quantity is zero or too small
    """
    notional = balance * position_size_pct * leverage
    quantity = constraints.floor_quantity(notional / entry) if entry > 0 else Decimal("0")
    constraints.check_notional(quantity, entry)
    return quantity


def compute_stop(
    side: TradeSide,
    entry: Decimal,
    atr: Decimal,
    balance: Decimal,
    stop_loss_balance_pct: Decimal,
    quantity: Decimal,
    constraints: InstrumentConstraints,
) -> Decimal:
    """
    Protective stop: the tighter of entry -/+ ATR and the level where the
    position loses ``balance x stop_loss_balance_pct``.
    """
    risk_per_unit = balance * stop_loss_balance_pct / quantity
    if side == TradeSide.BUY:
        stop = max(entry - atr, entry - risk_per_unit)
    else:
        stop = min(entry + atr, entry + risk_per_unit)
    return constraints.round_price(stop)


class ChasingOrderExecutor:
    """
    Fills a quantity with repeated limit orders at the latest price.

    Each round places a GTC limit for the unfilled remainder, waits, polls
    and cancels what is left. After ``max_attempts`` rounds the remainder
    goes out as a market order.
    """

    def __init__(
        self,
        broker: BrokerAdapter,
        feed: MarketDataProvider,
        delay: float = 10.0,
        max_attempts: int = 6,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._broker = broker
        self._feed = feed
        self._delay = delay
        self._max_attempts = max_attempts
        self._sleep = sleep

    async def execute(
        self,
        symbol: str,
        side: TradeSide,
        quantity: Decimal,
        constraints: InstrumentConstraints,
    ) -> FillSummary:
        """
        Chase until ``quantity`` is filled.

        Raises:
            OrderError: If nothing could be filled
        """
        filled = Decimal("0")
        cost = Decimal("0")
        attempts = 0
        remaining = quantity

        while remaining > 0 and attempts < self._max_attempts:
            attempts += 1
            price = constraints.round_price(await self._feed.get_latest_price(symbol))
            report = await self._chase_round(symbol, side, remaining, price)

            executed = min(report.executed_quantity, remaining)
            if executed > 0:
                fill_price = report.average_price if report.average_price > 0 else price
                filled += executed
                cost += executed * fill_price

            remaining = constraints.floor_quantity(quantity - filled)
            logger.info(
                f"Chase round {attempts} for {symbol}: price={price} "
                f"executed={executed} filled={filled}/{quantity}"
            )

        market_fallback = False
        if remaining > 0:
            market_fallback = True
            logger.warning(
                f"Chase attempts exhausted for {symbol}; sending market order for {remaining}"
            )
            report = await self._broker.submit_order(
                OrderRequest(
                    symbol=symbol,
                    side=side,
                    order_type=OrderType.MARKET,
                    quantity=remaining,
                )
            )
            executed = min(report.executed_quantity, remaining)
            if executed > 0:
                fill_price = report.average_price
                if fill_price <= 0:
                    fill_price = await self._feed.get_latest_price(symbol)
                filled += executed
                cost += executed * fill_price

        if filled <= 0:
            raise OrderError(f"No fill for {symbol} after {attempts} attempts", symbol=symbol)

        return FillSummary(
            symbol=symbol,
            side=side,
            quantity=filled,
            average_price=cost / filled,
            attempts=attempts,
            market_fallback=market_fallback,
        )

    async def _chase_round(
        self, symbol: str, side: TradeSide, quantity: Decimal, price: Decimal
    ) -> OrderReport:
        report = await self._broker.submit_order(
            OrderRequest(
                symbol=symbol,
                side=side,
                order_type=OrderType.LIMIT,
                quantity=quantity,
                price=price,
                time_in_force="GTC",
            )
        )
        if report.status.is_terminal:
            return report

        try:
            await self._sleep(self._delay)
            report = await self._broker.get_order(symbol, report.order_id)
            if report.status.is_terminal:
                return report
            return await self._cancel(symbol, report.order_id)
        except asyncio.CancelledError:
            logger.warning(f"Chase for {symbol} cancelled; cancelling order {report.order_id}")
            try:
                await asyncio.shield(self._broker.cancel_order(symbol, report.order_id))
            except OrderError as e:
                logger.error(f"Failed to cancel order {report.order_id} on shutdown: {e}")
            raise

    async def _cancel(self, symbol: str, order_id: str, retries: int = 2) -> OrderReport:
        """Cancel with a cheap retry; the final report carries the executed quantity."""
        for attempt in range(1, retries + 1):
            try:
                return await self._broker.cancel_order(symbol, order_id)
            except OrderError as e:
                if attempt == retries:
                    raise
                logger.warning(f"Cancel of {order_id} failed (attempt {attempt}): {e}")
        raise OrderError(f"Cancel of {order_id} not attempted", symbol=symbol)


class TradeExecutor:
    """Executes trade intents, at most once per symbol per cycle."""

    def __init__(
        self,
        broker: BrokerAdapter,
        registry: InstrumentRegistry,
        cycle: TradeCycle,
        trades: TradeStore,
        notifier: Notifier,
        chaser: ChasingOrderExecutor,
        settings: StrategySettings,
    ) -> None:
        self._broker = broker
        self._registry = registry
        self._cycle = cycle
        self._trades = trades
        self._notifier = notifier
        self._chaser = chaser
        self._settings = settings

    async def execute(self, intent: TradeIntent) -> TradeRecord:
        """
        Open a position for the intent.

        Raises:
            CycleConflictError: If the symbol already traded or is being traded
            TradeValidationError: On sizing or constraint failures
            OrderError: On broker failures
        """
        symbol = intent.symbol
        if not await self._cycle.claim(symbol):
            raise CycleConflictError(f"{symbol} already traded in the current cycle")

        try:
            record = await self._open_position(intent)
        except asyncio.CancelledError:
            await self._cycle.release(symbol)
            raise
        except Exception as e:
            await self._cycle.release(symbol)
            logger.error(f"Trade execution failed for {symbol}: {e}")
            await self._notifier.send(f"Failed to execute trade {symbol} ({intent.side.value}): {e}")
            raise

        await self._cycle.commit(symbol)
        await self._notifier.send(format_entry_message(record))
        return record

    async def _open_position(self, intent: TradeIntent) -> TradeRecord:
        settings = self._settings
        constraints = await self._registry.get(intent.symbol)

        balance = await self._broker.get_available_balance(settings.quote_asset)
        quantity = size_position(
            balance, settings.position_size_pct, settings.leverage, intent.entry, constraints
        )
        logger.info(
            f"Sizing {intent.symbol}: balance={balance} entry={intent.entry} qty={quantity}"
        )

        await self._broker.set_leverage(intent.symbol, settings.leverage)

        fill = await self._chaser.execute(intent.symbol, intent.side, quantity, constraints)
        entry_price = constraints.round_price(fill.average_price)
        stop = compute_stop(
            intent.side,
            entry_price,
            intent.atr,
            balance,
            settings.stop_loss_balance_pct,
            fill.quantity,
            constraints,
        )

        if settings.place_protective_stop:
            await self._place_protective_stop(intent.symbol, intent.side, stop)

        record = TradeRecord(
            symbol=intent.symbol,
            side=intent.side,
            entry_price=entry_price,
            quantity=fill.quantity,
            stop_loss=stop,
            signal=intent.signal,
        )
        await self._trades.upsert(record)
        await self._trades.log_trade(record)

        logger.info(
            f"Position opened: {record.symbol} {record.side.value} "
            f"qty={record.quantity} entry={record.entry_price} stop={record.stop_loss}"
        )
        return record

    async def _place_protective_stop(self, symbol: str, side: TradeSide, stop: Decimal) -> None:
        # The position is already open here; a failed stop must not orphan it
        try:
            await self._broker.submit_order(
                OrderRequest(
                    symbol=symbol,
                    side=side.opposite,
                    order_type=OrderType.STOP_MARKET,
                    stop_price=stop,
                    close_position=True,
                )
            )
        except OrderError as e:
            logger.error(f"Failed to place protective stop for {symbol} at {stop}: {e}")
            await self._notifier.send(f"Protective stop for {symbol} at {stop} failed: {e}")


def format_entry_message(record: TradeRecord) -> str:
    return "\n".join(
        [
            f"New trade {record.symbol} ({record.side.value})",
            f"Entry: {record.entry_price}",
            f"Qty: {record.quantity}",
            f"SL: {record.stop_loss}",
            f"Signal: {record.signal.value}",
        ]
    )
