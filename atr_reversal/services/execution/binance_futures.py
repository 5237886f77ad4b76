"""
Binance USD-M Futures Broker Adapter
Order execution via the futures REST API, fills via the user data stream.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from binance.exceptions import BinanceAPIException, BinanceRequestException

from atr_reversal.services.exchange import BinanceSession, to_decimal
from atr_reversal.shared.errors import OrderError
from atr_reversal.shared.models import (
    OrderReport,
    OrderRequest,
    OrderStatus,
    OrderType,
    OrderUpdate,
    PositionInfo,
    TradeSide,
)

from .base import BrokerAdapter

logger = logging.getLogger(__name__)

UNKNOWN_ORDER_CODE = -2011


def _format_decimal(value: Decimal) -> str:
    """Plain (non-exponent) string for order parameters."""
    return format(value.normalize(), "f")


def parse_order_report(result: Dict[str, Any]) -> OrderReport:
    """Map a REST order response to OrderReport."""
    return OrderReport(
        order_id=str(result.get("orderId", "")),
        symbol=result.get("symbol", ""),
        status=_map_status(result.get("status", "NEW")),
        executed_quantity=to_decimal(result.get("executedQty")),
        average_price=to_decimal(result.get("avgPrice")),
    )


def parse_order_update(msg: Dict[str, Any]) -> Optional[OrderUpdate]:
    """Map an ``ORDER_TRADE_UPDATE`` user-stream event."""
    if msg.get("e") != "ORDER_TRADE_UPDATE" or not isinstance(msg.get("o"), dict):
        return None
    o = msg["o"]
    return OrderUpdate(
        symbol=o.get("s", ""),
        side=TradeSide(o.get("S", "BUY")),
        status=_map_status(o.get("X", "NEW")),
        order_id=str(o.get("i", "")),
        average_price=to_decimal(o.get("ap")),
        quantity=to_decimal(o.get("q")),
        realized_profit=to_decimal(o.get("rp")),
        reduce_only=bool(o.get("R", False)),
        execution_type=o.get("x", ""),
    )


def _map_status(binance_status: str) -> OrderStatus:
    """Map Binance status to OrderStatus."""
    try:
        return OrderStatus(binance_status)
    except ValueError:
        # EXPIRED_IN_MATCH and friends can no longer fill
        return OrderStatus.EXPIRED


class BinanceFuturesBroker(BrokerAdapter):
    """
    Binance USD-M futures order execution adapter.

    Uses the REST API for order submission and the futures user data
    stream for real-time order updates.
    """

    def __init__(self, session: BinanceSession) -> None:
        super().__init__()
        self._session = session
        self._listen_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start listening to the user data stream."""
        await super().start()
        socket = self._session.socket_manager.futures_user_socket()
        self._listen_task = asyncio.create_task(self._listen_user_stream(socket))

    async def stop(self) -> None:
        """Stop the user data stream."""
        await super().stop()
        if self._listen_task:
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass
            self._listen_task = None

    async def _listen_user_stream(self, socket: Any) -> None:
        """Listen for user data stream events."""
        try:
            async with socket as stream:
                while self._connected:
                    msg = await stream.recv()
                    self._handle_user_event(msg)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"User stream error: {e}")

    def _handle_user_event(self, msg: Any) -> None:
        """Handle user stream event."""
        if not isinstance(msg, dict):
            return
        try:
            update = parse_order_update(msg)
        except (KeyError, ValueError, ArithmeticError) as e:
            logger.error(f"Error handling order update: {e}")
            return
        if update is not None:
            self._emit_order_update(update)

    async def get_available_balance(self, asset: str) -> Decimal:
        """Get available futures wallet balance for an asset."""
        try:
            balances = await self._session.client.futures_account_balance()
        except (BinanceAPIException, BinanceRequestException) as e:
            raise OrderError(f"Balance query failed: {e}")

        for balance in balances:
            if balance.get("asset") == asset:
                return to_decimal(balance.get("availableBalance"))
        return Decimal("0")

    async def get_positions(self) -> List[PositionInfo]:
        try:
            rows = await self._session.client.futures_position_information()
        except (BinanceAPIException, BinanceRequestException) as e:
            raise OrderError(f"Position query failed: {e}")

        return [
            PositionInfo(
                symbol=row.get("symbol", ""),
                amount=to_decimal(row.get("positionAmt")),
                entry_price=to_decimal(row.get("entryPrice")),
                mark_price=to_decimal(row.get("markPrice")),
                unrealized_pnl=to_decimal(row.get("unRealizedProfit")),
            )
            for row in rows
        ]

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        try:
            await self._session.client.futures_change_leverage(symbol=symbol, leverage=leverage)
        except (BinanceAPIException, BinanceRequestException) as e:
            raise OrderError(f"Set leverage failed: {e}", symbol, _error_code(e))
        logger.info(f"Leverage set: {symbol} x{leverage}")

    async def submit_order(self, request: OrderRequest) -> OrderReport:
        """Submit order to Binance futures."""
        params: Dict[str, Any] = {
            "symbol": request.symbol,
            "side": request.side.value,
            "type": request.order_type.value,
            "newOrderRespType": "RESULT",
        }
        if request.quantity is not None and not request.close_position:
            params["quantity"] = _format_decimal(request.quantity)
        if request.order_type == OrderType.LIMIT and request.price is not None:
            params["price"] = _format_decimal(request.price)
            params["timeInForce"] = request.time_in_force or "GTC"
        if request.stop_price is not None:
            params["stopPrice"] = _format_decimal(request.stop_price)
            params["workingType"] = "MARK_PRICE"
        if request.close_position:
            params["closePosition"] = "true"
        elif request.reduce_only:
            params["reduceOnly"] = "true"

        try:
            result = await self._session.client.futures_create_order(**params)
        except (BinanceAPIException, BinanceRequestException) as e:
            logger.error(f"Binance order rejected: {request.symbol} {e}")
            raise OrderError(str(e), request.symbol, _error_code(e))

        report = parse_order_report(result)
        logger.info(
            f"Order submitted: {request.symbol} {request.side.value} {request.order_type.value} "
            f"qty={request.quantity} price={request.price} id={report.order_id}"
        )
        return report

    async def get_order(self, symbol: str, order_id: str) -> OrderReport:
        try:
            result = await self._session.client.futures_get_order(symbol=symbol, orderId=order_id)
        except (BinanceAPIException, BinanceRequestException) as e:
            raise OrderError(f"Get status failed: {e}", symbol, _error_code(e))
        return parse_order_report(result)

    async def cancel_order(self, symbol: str, order_id: str) -> OrderReport:
        """Cancel; an order that already completed reports its final state."""
        try:
            result = await self._session.client.futures_cancel_order(symbol=symbol, orderId=order_id)
        except BinanceAPIException as e:
            if e.code == UNKNOWN_ORDER_CODE:
                return await self.get_order(symbol, order_id)
            raise OrderError(f"Cancel failed: {e}", symbol, _error_code(e))
        except BinanceRequestException as e:
            raise OrderError(f"Cancel failed: {e}", symbol)
        return parse_order_report(result)

    async def cancel_open_orders(self, symbol: str) -> None:
        try:
            await self._session.client.futures_cancel_all_open_orders(symbol=symbol)
        except (BinanceAPIException, BinanceRequestException) as e:
            raise OrderError(f"Cancel open orders failed: {e}", symbol, _error_code(e))
        logger.info(f"Cancelled open orders for {symbol}")


def _error_code(e: Exception) -> Optional[str]:
    code = getattr(e, "code", None)
    return None if code is None else str(code)
