from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from decimal import Decimal

from atr_reversal.services.execution.base import BrokerAdapter
from atr_reversal.services.monitoring.notifier import Notifier
from atr_reversal.services.risk_engine.trade_monitor import TradeMonitor, format_close_message
from atr_reversal.services.risk_engine.trade_store import TradeStore
from atr_reversal.shared.models import (
    ExitReason,
    OrderStatus,
    OrderUpdate,
    SignalKind,
    TradeRecord,
    TradeSide,
)
from atr_reversal.shared.storage import JsonStore


class _Broker(BrokerAdapter):
    async def get_available_balance(self, asset):
        return Decimal("0")

    async def get_positions(self):
        return []

    async def set_leverage(self, symbol, leverage):
        return None

    async def submit_order(self, request):
        raise NotImplementedError

    async def get_order(self, symbol, order_id):
        raise NotImplementedError

    async def cancel_order(self, symbol, order_id):
        raise NotImplementedError

    async def cancel_open_orders(self, symbol):
        return None


class _Notifier(Notifier):
    def __init__(self) -> None:
        self.messages: list[str] = []

    async def send(self, text: str) -> None:
        self.messages.append(text)


def _update(status: OrderStatus = OrderStatus.FILLED, reduce_only: bool = True) -> OrderUpdate:
    return OrderUpdate(
        symbol="BTCUSDT",
        side=TradeSide.SELL,
        status=status,
        order_id="42",
        average_price=Decimal("94.9"),
        quantity=Decimal("2"),
        realized_profit=Decimal("-10.2"),
        reduce_only=reduce_only,
        execution_type="TRADE",
    )


def _record() -> TradeRecord:
    return TradeRecord(
        symbol="BTCUSDT",
        side=TradeSide.BUY,
        entry_price=Decimal("100"),
        quantity=Decimal("2"),
        stop_loss=Decimal("95"),
        opened_at=datetime(2026, 1, 2, 1, tzinfo=timezone.utc),
        signal=SignalKind.BULLISH_ENGULFING,
    )


def test_filled_reduce_only_update_closes_trade(tmp_path) -> None:
    broker = _Broker()
    notifier = _Notifier()
    trades = TradeStore(JsonStore(), tmp_path / "open.json", tmp_path / "trades.log")
    monitor = TradeMonitor(broker, trades, notifier)
    record = _record()

    async def scenario():
        await trades.upsert(record)
        monitor.start()
        broker._emit_order_update(_update())
        for _ in range(200):
            if notifier.messages:
                break
            await asyncio.sleep(0.01)
        await monitor.stop()
        return await trades.load_open()

    assert asyncio.run(scenario()) == []
    assert record.exit_reason == ExitReason.EXTERNAL_FILL
    assert record.exit_price == Decimal("94.9")
    assert record.pnl == Decimal("-10.2")
    assert notifier.messages == [format_close_message(_update())]


def test_non_closing_updates_are_ignored(tmp_path) -> None:
    broker = _Broker()
    notifier = _Notifier()
    trades = TradeStore(JsonStore(), tmp_path / "open.json", tmp_path / "trades.log")
    monitor = TradeMonitor(broker, trades, notifier)

    async def scenario():
        await trades.upsert(_record())
        monitor.start()
        broker._emit_order_update(_update(status=OrderStatus.PARTIALLY_FILLED))
        broker._emit_order_update(_update(reduce_only=False))
        await asyncio.sleep(0.2)
        return await trades.load_open()

    assert len(asyncio.run(scenario())) == 1
    assert notifier.messages == []


def test_close_message_describes_direction() -> None:
    message = format_close_message(_update())
    assert message.splitlines() == [
        "Trade closed BTCUSDT",
        "Close Long",
        "Price: 94.9",
        "Qty: 2",
        "PnL: -10.2",
    ]


def test_fill_for_already_closed_trade_is_not_notified_twice(tmp_path) -> None:
    notifier = _Notifier()
    trades = TradeStore(JsonStore(), tmp_path / "open.json", tmp_path / "trades.log")
    monitor = TradeMonitor(_Broker(), trades, notifier)
    record = _record()

    async def scenario():
        await trades.upsert(record)
        # risk manager market exit retires the trade before its fill arrives
        await trades.close(record, Decimal("101"), Decimal("2"), ExitReason.TIME_EXIT)
        return await monitor.handle_update(_update())

    assert asyncio.run(scenario()) is None
    assert record.exit_reason == ExitReason.TIME_EXIT
    assert notifier.messages == []
