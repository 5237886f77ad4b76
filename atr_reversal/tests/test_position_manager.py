from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from atr_reversal.services.execution.base import BrokerAdapter
from atr_reversal.services.monitoring.notifier import Notifier
from atr_reversal.services.risk_engine.position_manager import PositionManager
from atr_reversal.services.risk_engine.trade_store import TradeStore
from atr_reversal.shared.config import StrategySettings
from atr_reversal.shared.errors import OrderError
from atr_reversal.shared.models import (
    ExitReason,
    OrderReport,
    OrderStatus,
    OrderType,
    PositionInfo,
    SignalKind,
    TradeRecord,
    TradeSide,
)
from atr_reversal.shared.storage import JsonStore

_NOW = datetime(2026, 1, 2, 12, tzinfo=timezone.utc)


class _Broker(BrokerAdapter):
    def __init__(self, positions=None, balance: str = "1000") -> None:
        super().__init__()
        self.positions: list[PositionInfo] = list(positions or [])
        self.balance = Decimal(balance)
        self.requests = []
        self.balance_failures = 0
        self.cancelled_symbols: list[str] = []
        self.cancel_failures = 0

    async def get_available_balance(self, asset):
        if self.balance_failures:
            self.balance_failures -= 1
            raise OrderError("Balance query failed: timeout")
        return self.balance

    async def get_positions(self):
        return self.positions

    async def set_leverage(self, symbol, leverage):
        return None

    async def submit_order(self, request):
        self.requests.append(request)
        return OrderReport(
            order_id=str(len(self.requests)),
            symbol=request.symbol,
            status=OrderStatus.FILLED,
            executed_quantity=request.quantity,
            average_price=Decimal("101"),
        )

    async def get_order(self, symbol, order_id):
        raise NotImplementedError

    async def cancel_order(self, symbol, order_id):
        raise NotImplementedError

    async def cancel_open_orders(self, symbol):
        if self.cancel_failures:
            self.cancel_failures -= 1
            raise OrderError("Cancel open orders failed: timeout", symbol)
        self.cancelled_symbols.append(symbol)


class _Notifier(Notifier):
    def __init__(self) -> None:
        self.messages: list[str] = []

    async def send(self, text: str) -> None:
        self.messages.append(text)


def _settings(**overrides) -> StrategySettings:
    fields = dict(
        time_based_exit_hours=Decimal("20"),
        profit_trigger_pct=Decimal("0.05"),
        lock_percent_of_trigger=Decimal("0.6"),
        stop_loss_balance_pct=Decimal("0.01"),
    )
    fields.update(overrides)
    return StrategySettings(**fields)


def _record(symbol: str = "BTCUSDT", hours_open: float = 2, side: TradeSide = TradeSide.BUY) -> TradeRecord:
    return TradeRecord(
        symbol=symbol,
        side=side,
        entry_price=Decimal("100"),
        quantity=Decimal("2"),
        stop_loss=Decimal("95"),
        opened_at=_NOW - timedelta(hours=hours_open),
        signal=SignalKind.BULLISH_ENGULFING,
    )


def _position(symbol: str = "BTCUSDT", amount: str = "2", pnl: str = "0") -> PositionInfo:
    return PositionInfo(
        symbol=symbol,
        amount=Decimal(amount),
        entry_price=Decimal("100"),
        mark_price=Decimal("100"),
        unrealized_pnl=Decimal(pnl),
    )


def _manager(tmp_path, broker: _Broker, notifier: _Notifier, settings=None, sleep=asyncio.sleep):
    trades = TradeStore(JsonStore(), tmp_path / "open.json", tmp_path / "trades.log")
    manager = PositionManager(
        broker, trades, notifier, settings or _settings(), clock=lambda: _NOW, sleep=sleep
    )
    return manager, trades


def _logged(tmp_path) -> list[dict]:
    path = tmp_path / "trades.log"
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text().splitlines()]


def test_no_open_trades_skips_exchange_queries(tmp_path) -> None:
    broker = _Broker()
    broker.balance_failures = 1
    manager, _ = _manager(tmp_path, broker, _Notifier())

    snapshot = asyncio.run(manager.evaluate())

    assert snapshot.positions == []
    assert broker.balance_failures == 1


@pytest.mark.parametrize("positions", [[], [_position(amount="0")]])
def test_missing_or_zero_position_reconciles_trade(tmp_path, positions) -> None:
    broker = _Broker(positions)
    manager, trades = _manager(tmp_path, broker, _Notifier())
    record = _record()

    async def scenario():
        await trades.upsert(record)
        snapshot = await manager.evaluate()
        return snapshot, await trades.load_open()

    snapshot, open_trades = asyncio.run(scenario())

    assert open_trades == []
    assert snapshot.closed_trade_ids == [record.id]
    assert broker.requests == []
    assert _logged(tmp_path)[0]["exit_reason"] == ExitReason.EXCHANGE_CLOSED.value


def test_time_exit_closes_at_market(tmp_path) -> None:
    broker = _Broker([_position(amount="2", pnl="3")])
    notifier = _Notifier()
    manager, trades = _manager(tmp_path, broker, notifier)

    async def scenario():
        await trades.upsert(_record(hours_open=21))
        await manager.evaluate()
        return await trades.load_open()

    assert asyncio.run(scenario()) == []
    order = broker.requests[0]
    assert order.order_type == OrderType.MARKET
    assert order.side == TradeSide.SELL
    assert order.reduce_only is True
    assert order.quantity == Decimal("2")
    logged = _logged(tmp_path)[0]
    assert logged["exit_reason"] == "time_exit"
    assert logged["exit_price"] == "101"
    assert notifier.messages == ["Closed BTCUSDT due to time limit (20h)"]


def test_short_position_closes_with_buy(tmp_path) -> None:
    broker = _Broker([_position(amount="-2")])
    manager, trades = _manager(tmp_path, broker, _Notifier())

    async def scenario():
        await trades.upsert(_record(hours_open=25, side=TradeSide.SELL))
        await manager.evaluate()

    asyncio.run(scenario())

    assert broker.requests[0].side == TradeSide.BUY
    assert broker.requests[0].quantity == Decimal("2")


def test_portfolio_stop_closes_every_position(tmp_path) -> None:
    # -6 and -5 are each above -1% of 1000, together they breach it
    broker = _Broker([_position("BTCUSDT", pnl="-6"), _position("ETHUSDT", pnl="-5")])
    notifier = _Notifier()
    manager, trades = _manager(tmp_path, broker, notifier)

    async def scenario():
        await trades.upsert(_record("BTCUSDT"))
        await trades.upsert(_record("ETHUSDT"))
        snapshot = await manager.evaluate()
        return snapshot, await trades.load_open()

    snapshot, open_trades = asyncio.run(scenario())

    assert open_trades == []
    assert {r["exit_reason"] for r in _logged(tmp_path)} == {"stop_loss"}
    assert snapshot.realized_pnl == Decimal("-11")
    assert snapshot.pnl_fraction == Decimal("-0.011")
    assert len(notifier.messages) == 2


def test_single_losing_position_within_portfolio_limit_stays_open(tmp_path) -> None:
    broker = _Broker([_position("BTCUSDT", pnl="-9"), _position("ETHUSDT", pnl="4")])
    manager, trades = _manager(tmp_path, broker, _Notifier())

    async def scenario():
        await trades.upsert(_record("BTCUSDT"))
        await trades.upsert(_record("ETHUSDT"))
        await manager.evaluate()
        return await trades.load_open()

    assert len(asyncio.run(scenario())) == 2
    assert broker.requests == []


def test_profit_lock_is_set_once_and_floor_never_moves(tmp_path) -> None:
    broker = _Broker([_position(pnl="60")])
    notifier = _Notifier()
    manager, trades = _manager(tmp_path, broker, notifier)
    record = _record()

    async def scenario():
        await trades.upsert(record)
        await manager.evaluate()
        first_floor = record.profit_floor
        broker.positions = [_position(pnl="80")]
        await manager.evaluate()
        broker.positions = [_position(pnl="40")]
        await manager.evaluate()
        reloaded = TradeStore(JsonStore(), tmp_path / "open.json", tmp_path / "trades.log")
        return first_floor, await reloaded.load_open()

    first_floor, persisted = asyncio.run(scenario())

    assert first_floor == Decimal("0.030")
    assert record.profit_lock_applied is True
    assert record.profit_floor == first_floor
    assert persisted[0].profit_lock_applied is True
    assert persisted[0].profit_floor == first_floor
    assert broker.requests == []
    assert len(notifier.messages) == 1
    assert notifier.messages[0].startswith("Locked profit on BTCUSDT")


def test_floor_breach_closes_locked_trade(tmp_path) -> None:
    broker = _Broker([_position(pnl="60")])
    manager, trades = _manager(tmp_path, broker, _Notifier())

    async def scenario():
        await trades.upsert(_record())
        await manager.evaluate()
        broker.positions = [_position(pnl="30")]
        await manager.evaluate()
        return await trades.load_open()

    assert asyncio.run(scenario()) == []
    assert broker.requests[0].reduce_only is True
    assert _logged(tmp_path)[0]["exit_reason"] == "profit_floor"


def test_run_forever_survives_failed_tick_with_interval_floor(tmp_path) -> None:
    broker = _Broker([_position()])
    broker.balance_failures = 1
    sleeps: list[float] = []

    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)
        if len(sleeps) == 2:
            raise asyncio.CancelledError

    manager, trades = _manager(
        tmp_path, broker, _Notifier(), _settings(position_check_interval_sec=1), sleep=_sleep
    )

    async def scenario():
        await trades.upsert(_record())
        with pytest.raises(asyncio.CancelledError):
            await manager.run_forever()

    asyncio.run(scenario())

    assert manager.interval == 5
    assert sleeps == [5, 5]
    assert broker.balance_failures == 0


class _ListenerFirstBroker(_Broker):
    """Lets the fill listener close BTCUSDT while the tick waits on positions."""

    trades: TradeStore

    async def get_positions(self):
        await self.trades.close_by_symbol(
            "BTCUSDT", Decimal("94.9"), Decimal("-10.2"), ExitReason.EXTERNAL_FILL
        )
        return self.positions


def test_trade_closed_by_fill_listener_mid_tick_does_not_abort_other_exits(tmp_path) -> None:
    broker = _ListenerFirstBroker([_position("ETHUSDT", amount="2")])
    notifier = _Notifier()
    manager, trades = _manager(tmp_path, broker, notifier)
    broker.trades = trades
    btc = _record("BTCUSDT", hours_open=1)
    eth = _record("ETHUSDT", hours_open=30)

    async def scenario():
        await trades.upsert(btc)
        await trades.upsert(eth)
        snapshot = await manager.evaluate()
        return snapshot, await trades.load_open()

    snapshot, open_trades = asyncio.run(scenario())

    assert open_trades == []
    assert snapshot.closed_trade_ids == [eth.id]
    assert [r.symbol for r in broker.requests] == ["ETHUSDT"]
    reasons = {entry["symbol"]: entry["exit_reason"] for entry in _logged(tmp_path)}
    assert reasons == {"BTCUSDT": "external_fill", "ETHUSDT": "time_exit"}
    assert notifier.messages == ["Closed ETHUSDT due to time limit (20h)"]


def test_forced_close_cancels_resting_protective_stop(tmp_path) -> None:
    broker = _Broker([_position(amount="2")])
    manager, trades = _manager(tmp_path, broker, _Notifier())

    async def scenario():
        await trades.upsert(_record(hours_open=21))
        await manager.evaluate()

    asyncio.run(scenario())

    assert broker.cancelled_symbols == ["BTCUSDT"]


def test_reconciled_trade_cancels_resting_orders(tmp_path) -> None:
    broker = _Broker([])
    manager, trades = _manager(tmp_path, broker, _Notifier())

    async def scenario():
        await trades.upsert(_record())
        await manager.evaluate()

    asyncio.run(scenario())

    assert broker.cancelled_symbols == ["BTCUSDT"]
    assert broker.requests == []


def test_failed_stop_cancel_still_closes_trade(tmp_path) -> None:
    broker = _Broker([_position(amount="2")])
    broker.cancel_failures = 1
    manager, trades = _manager(tmp_path, broker, _Notifier())

    async def scenario():
        await trades.upsert(_record(hours_open=21))
        await manager.evaluate()
        return await trades.load_open()

    assert asyncio.run(scenario()) == []
    assert _logged(tmp_path)[0]["exit_reason"] == "time_exit"
