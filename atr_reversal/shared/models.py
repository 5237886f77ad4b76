"""
Shared Models for the ATR Reversal Agent
Pydantic schemas for all core data structures.

This module is the SINGLE SOURCE OF TRUTH for all data models.
"""

from datetime import datetime
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from atr_reversal.shared.clock import utc_now
from atr_reversal.shared.errors import TradeStateError, TradeValidationError


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Enums
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

class TradeSide(str, Enum):
    """Order / position side enum."""
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "TradeSide":
        return TradeSide.SELL if self is TradeSide.BUY else TradeSide.BUY


class SignalKind(str, Enum):
    """Reversal pattern detected on the watch interval."""
    BULLISH_ENGULFING = "bullish_engulfing"
    BEARISH_ENGULFING = "bearish_engulfing"
    BULLISH_HAMMER = "bullish_hammer"
    BEARISH_HAMMER = "bearish_hammer"

    @property
    def side(self) -> TradeSide:
        """Direction implied by the pattern."""
        return TradeSide.SELL if self.value.startswith("bearish") else TradeSide.BUY


class TradeStatus(str, Enum):
    """Trade record status enum."""
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class ExitReason(str, Enum):
    """Why a trade was closed."""
    TIME_EXIT = "time_exit"
    STOP_LOSS = "stop_loss"
    PROFIT_FLOOR = "profit_floor"
    EXCHANGE_CLOSED = "exchange_closed"
    EXTERNAL_FILL = "external_fill"


class OrderType(str, Enum):
    """Order type enum."""
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    STOP_MARKET = "STOP_MARKET"


class OrderStatus(str, Enum):
    """Exchange order status enum."""
    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELED = "CANCELED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        """Check if order can no longer fill."""
        return self in {
            OrderStatus.FILLED,
            OrderStatus.CANCELED,
            OrderStatus.REJECTED,
            OrderStatus.EXPIRED,
        }


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Market Data Models
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

class Candle(BaseModel):
    """OHLCV candle data."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    symbol: str
    interval: str = "5m"  # 5m, 15m, 1d
    open_time: datetime
    close_time: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal = Decimal("0")
    is_closed: bool = True  # False for live streaming candles

    @property
    def range(self) -> Decimal:
        """High-low span."""
        return self.high - self.low

    @property
    def body(self) -> Decimal:
        """Absolute open-close distance."""
        return abs(self.close - self.open)

    @property
    def body_top(self) -> Decimal:
        return max(self.open, self.close)

    @property
    def body_bottom(self) -> Decimal:
        return min(self.open, self.close)

    @property
    def is_bullish(self) -> bool:
        return self.close > self.open

    @property
    def is_bearish(self) -> bool:
        return self.close < self.open


class AtrSnapshot(BaseModel):
    """Cached daily ATR for one instrument."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    symbol: str
    atr: Decimal
    day: str  # YYYY-MM-DD (UTC)
    calculated_at: datetime = Field(default_factory=utc_now)


class InstrumentConstraints(BaseModel):
    """Exchange quantization rules for one instrument (read-only)."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    symbol: str
    quote_asset: str = "USDT"
    step_size: Decimal
    tick_size: Decimal
    min_notional: Decimal = Decimal("0")
    min_quantity: Decimal = Decimal("0")

    def floor_quantity(self, quantity: Decimal) -> Decimal:
        """Round a quantity down to the step size."""
        if self.step_size <= 0:
            return quantity
        steps = (quantity / self.step_size).to_integral_value(rounding=ROUND_DOWN)
        return (steps * self.step_size).quantize(self.step_size)

    def round_price(self, price: Decimal) -> Decimal:
        """Round a price to the nearest tick."""
        if self.tick_size <= 0:
            return price
        ticks = (price / self.tick_size).to_integral_value(rounding=ROUND_HALF_UP)
        return (ticks * self.tick_size).quantize(self.tick_size)

    def check_notional(self, quantity: Decimal, price: Decimal) -> None:
        """
        Validate an order size against exchange minimums.

        Raises:
            TradeValidationError: If quantity is zero or below minimums
        """
        if quantity <= 0:
            raise TradeValidationError(f"Calculated quantity is zero for {self.symbol}")
        if self.min_quantity and quantity < self.min_quantity:
            raise TradeValidationError(
                f"Quantity {quantity} below minimum {self.min_quantity} for {self.symbol}"
            )
        if self.min_notional and quantity * price < self.min_notional:
            raise TradeValidationError(
                f"Notional too small for {self.symbol}. Minimum: {self.min_notional}"
            )


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Signal Models
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

class VolatilityCandidate(BaseModel):
    """An instrument flagged for pattern monitoring."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    symbol: str
    atr: Decimal
    range: Decimal
    preferred_side: TradeSide
    reference_candle: Candle


class TradeIntent(BaseModel):
    """Entry signal handed from the watcher to the execution engine."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    symbol: str
    side: TradeSide
    entry: Decimal
    atr: Decimal
    signal: SignalKind
    created_at: datetime = Field(default_factory=utc_now)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Trade Models
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

class TradeRecord(BaseModel):
    """Trade record - mutable until closed."""
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: str(uuid4()))
    symbol: str
    side: TradeSide
    entry_price: Decimal
    quantity: Decimal
    stop_loss: Decimal
    profit_floor: Optional[Decimal] = None
    profit_lock_applied: bool = False
    opened_at: datetime = Field(default_factory=utc_now)
    status: TradeStatus = TradeStatus.OPEN
    closed_at: Optional[datetime] = None
    exit_price: Optional[Decimal] = None
    pnl: Optional[Decimal] = None
    exit_reason: Optional[ExitReason] = None
    signal: SignalKind

    @property
    def is_open(self) -> bool:
        """Check if trade is still open."""
        return self.status == TradeStatus.OPEN

    def close(
        self,
        exit_price: Optional[Decimal],
        pnl: Optional[Decimal],
        reason: ExitReason,
        closed_at: Optional[datetime] = None,
    ) -> None:
        """
        Terminate the trade. OPEN -> CLOSED only.

        Raises:
            TradeStateError: If the trade is already closed
        """
        if self.status == TradeStatus.CLOSED:
            raise TradeStateError(f"Trade {self.id} ({self.symbol}) is already closed")
        self.status = TradeStatus.CLOSED
        self.exit_price = exit_price
        self.pnl = pnl
        self.exit_reason = reason
        self.closed_at = closed_at or utc_now()


class TradeCycleState(BaseModel):
    """Per-UTC-day set of already-traded symbols."""
    model_config = ConfigDict(extra="forbid")

    day: str
    traded_symbols: list[str] = Field(default_factory=list)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Exchange Models
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

class OrderRequest(BaseModel):
    """Order submission parameters."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    symbol: str
    side: TradeSide
    order_type: OrderType
    quantity: Optional[Decimal] = None  # None with close_position
    price: Optional[Decimal] = None  # LIMIT only
    stop_price: Optional[Decimal] = None  # STOP_MARKET only
    reduce_only: bool = False
    close_position: bool = False
    time_in_force: Optional[str] = None  # GTC for LIMIT


class OrderReport(BaseModel):
    """Order state as reported by the exchange."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    order_id: str
    symbol: str
    status: OrderStatus
    executed_quantity: Decimal = Decimal("0")
    average_price: Decimal = Decimal("0")


class PositionInfo(BaseModel):
    """Live exchange position."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    symbol: str
    amount: Decimal  # signed: > 0 long, < 0 short
    entry_price: Decimal = Decimal("0")
    mark_price: Decimal = Decimal("0")
    unrealized_pnl: Decimal = Decimal("0")


class OrderUpdate(BaseModel):
    """Order update pushed by the user data stream."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    symbol: str
    side: TradeSide
    status: OrderStatus
    order_id: str = ""
    average_price: Decimal = Decimal("0")
    quantity: Decimal = Decimal("0")
    realized_profit: Decimal = Decimal("0")
    reduce_only: bool = False
    execution_type: str = ""


class FillSummary(BaseModel):
    """Aggregate result of one chased entry."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    symbol: str
    side: TradeSide
    quantity: Decimal
    average_price: Decimal  # volume-weighted across all fills
    attempts: int
    market_fallback: bool = False


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Risk Models
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

class PositionPnl(BaseModel):
    """P&L view of one matched trade/position pair."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    trade_id: str
    symbol: str
    mark_price: Decimal
    unrealized_pnl: Decimal
    pnl_fraction: Decimal  # unrealized / available balance


class PortfolioSnapshot(BaseModel):
    """Aggregate P&L across all open positions for one risk tick."""
    model_config = ConfigDict(extra="forbid")

    balance: Decimal
    positions: list[PositionPnl] = Field(default_factory=list)
    realized_pnl: Decimal = Decimal("0")
    closed_trade_ids: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)

    @property
    def unrealized_pnl(self) -> Decimal:
        return sum((p.unrealized_pnl for p in self.positions), Decimal("0"))

    @property
    def total_pnl(self) -> Decimal:
        return self.unrealized_pnl + self.realized_pnl

    @property
    def pnl_fraction(self) -> Decimal:
        """Portfolio P&L as a fraction of available balance."""
        if self.balance <= 0:
            return Decimal("0")
        return self.total_pnl / self.balance
