"""Average True Range over daily candles."""

from decimal import Decimal
from typing import Sequence

from atr_reversal.shared.models import Candle


def true_range(prev: Candle, curr: Candle) -> Decimal:
    """max(high - low, |high - prev close|, |low - prev close|)."""
    return max(
        curr.high - curr.low,
        abs(curr.high - prev.close),
        abs(curr.low - prev.close),
    )


def calculate_atr(candles: Sequence[Candle], period: int) -> Decimal:
    """
    Simple mean of the last ``period`` true ranges.

    Raises:
        ValueError: If fewer than ``period + 1`` candles are supplied
    """
    if period <= 0:
        raise ValueError(f"ATR period must be positive, got {period}")
    if len(candles) < period + 1:
        raise ValueError(f"Not enough candles to calculate ATR({period})")

    ranges = [true_range(candles[i - 1], candles[i]) for i in range(1, len(candles))]
    recent = ranges[-period:]
    return sum(recent, Decimal("0")) / period
