"""
Binance USD-M Futures Market Data
REST candles/prices/exchange info and WebSocket kline subscriptions.
"""

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, List, Optional

from binance.exceptions import BinanceAPIException, BinanceRequestException

from atr_reversal.services.exchange import BinanceSession, to_decimal
from atr_reversal.shared.errors import DataFeedError
from atr_reversal.shared.models import Candle, InstrumentConstraints

from .base import CandleSubscription, MarketDataProvider

logger = logging.getLogger(__name__)


def _ms_to_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(int(ms) / 1000, tz=timezone.utc)


def _datetime_to_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def parse_rest_kline(symbol: str, interval: str, row: List[Any], now: datetime) -> Candle:
    """Parse a REST kline row ``[openTime, o, h, l, c, v, closeTime, ...]``."""
    close_time = _ms_to_datetime(row[6])
    return Candle(
        symbol=symbol,
        interval=interval,
        open_time=_ms_to_datetime(row[0]),
        close_time=close_time,
        open=to_decimal(row[1]),
        high=to_decimal(row[2]),
        low=to_decimal(row[3]),
        close=to_decimal(row[4]),
        volume=to_decimal(row[5]),
        is_closed=close_time < now,
    )


def parse_stream_kline(data: dict) -> Optional[Candle]:
    """Parse a ``kline`` stream event; returns None for other events."""
    if data.get("e") != "kline" or "k" not in data:
        return None
    k = data["k"]
    return Candle(
        symbol=data.get("s") or k.get("s", ""),
        interval=k.get("i", ""),
        open_time=_ms_to_datetime(k["t"]),
        close_time=_ms_to_datetime(k["T"]),
        open=to_decimal(k.get("o")),
        high=to_decimal(k.get("h")),
        low=to_decimal(k.get("l")),
        close=to_decimal(k.get("c")),
        volume=to_decimal(k.get("v")),
        is_closed=bool(k.get("x", False)),
    )


def parse_constraints(meta: dict) -> InstrumentConstraints:
    """Build constraints from an exchangeInfo symbol entry."""
    filters = {f.get("filterType"): f for f in meta.get("filters", [])}
    lot = filters.get("MARKET_LOT_SIZE") or filters.get("LOT_SIZE") or {}
    price_filter = filters.get("PRICE_FILTER", {})
    notional = filters.get("MIN_NOTIONAL") or filters.get("NOTIONAL") or {}
    return InstrumentConstraints(
        symbol=meta["symbol"],
        quote_asset=meta.get("quoteAsset", ""),
        step_size=to_decimal(lot.get("stepSize")),
        tick_size=to_decimal(price_filter.get("tickSize")),
        min_notional=to_decimal(notional.get("notional") or notional.get("minNotional")),
        min_quantity=to_decimal(lot.get("minQty")),
    )


class BinanceKlineSubscription(CandleSubscription):
    """One futures kline stream, forwarding only closed candles."""

    def __init__(self, session: BinanceSession, symbol: str, interval: str) -> None:
        super().__init__(symbol, interval)
        self._session = session
        self._reader: Optional[asyncio.Task] = None

    async def _open(self) -> None:
        socket = self._session.socket_manager.futures_multiplex_socket([self.topic])
        self._reader = asyncio.create_task(self._receive_loop(socket))

    async def _close(self) -> None:
        if self._reader:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None

    async def _receive_loop(self, socket: Any) -> None:
        """Background task to receive WebSocket messages."""
        try:
            async with socket as stream:
                while True:
                    message = await stream.recv()
                    self._process_message(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Kline stream error on {self.topic}: {e}")

    def _process_message(self, message: Any) -> None:
        if not isinstance(message, dict):
            return
        if message.get("e") == "error":
            logger.warning(f"Kline stream {self.topic} reported: {message.get('m')}")
            return
        data = message.get("data", message)
        try:
            candle = parse_stream_kline(data)
        except (KeyError, ValueError, ArithmeticError) as e:
            logger.warning(f"Unparseable kline on {self.topic}: {e}")
            return
        if candle is None or not candle.is_closed:
            return
        if candle.symbol.upper() != self.symbol.upper() or candle.interval != self.interval:
            return
        self.deliver(candle)


class BinanceFuturesFeed(MarketDataProvider):
    """
    Binance USD-M futures data provider.
    """

    def __init__(self, session: BinanceSession) -> None:
        super().__init__()
        self._session = session

    async def list_instruments(self, quote_asset: str) -> List[InstrumentConstraints]:
        """Perpetual-style symbols in TRADING status for the quote asset."""
        try:
            info = await self._session.client.futures_exchange_info()
        except (BinanceAPIException, BinanceRequestException) as e:
            raise DataFeedError(f"exchangeInfo failed: {e}")

        instruments = []
        for meta in info.get("symbols", []):
            symbol = meta.get("symbol", "")
            if meta.get("status") != "TRADING":
                continue
            if meta.get("quoteAsset") != quote_asset or "_" in symbol:
                continue
            instruments.append(parse_constraints(meta))
        return instruments

    async def fetch_candles(
        self,
        symbol: str,
        interval: str,
        limit: int,
        start_time: Optional[datetime] = None,
    ) -> List[Candle]:
        """Fetch klines from the futures REST API."""
        params: dict[str, Any] = {"symbol": symbol, "interval": interval, "limit": limit}
        if start_time is not None:
            params["startTime"] = _datetime_to_ms(start_time)

        try:
            rows = await self._session.client.futures_klines(**params)
        except (BinanceAPIException, BinanceRequestException) as e:
            raise DataFeedError(f"klines {interval} failed: {e}", symbol)

        now = datetime.now(tz=timezone.utc)
        return [parse_rest_kline(symbol, interval, row, now) for row in rows]

    def subscribe_candles(self, symbol: str, interval: str) -> CandleSubscription:
        return BinanceKlineSubscription(self._session, symbol, interval)

    async def get_latest_price(self, symbol: str) -> Decimal:
        try:
            ticker = await self._session.client.futures_symbol_ticker(symbol=symbol)
        except (BinanceAPIException, BinanceRequestException) as e:
            raise DataFeedError(f"ticker failed: {e}", symbol)
        return to_decimal(ticker.get("price"))
