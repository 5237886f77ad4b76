"""
Candle Reversal Patterns
Pure classifiers over a short window of closed candles.

Both detectors are total: degenerate candles (zero range, zero body)
yield None instead of raising.
"""

from decimal import Decimal
from typing import Optional, Sequence

from atr_reversal.shared.models import Candle, SignalKind

# Hammer thresholds
HAMMER_MAX_BODY_SHARE = Decimal("0.35")  # body / range
HAMMER_TAIL_MULTIPLIER = Decimal("2")  # dominant wick >= 2 x body
HAMMER_OPPOSITE_WICK_MAX = Decimal("0.6")  # opposite wick <= 0.6 x body
HAMMER_DOJI_OPPOSITE_SHARE = Decimal("0.1")  # zero body: opposite wick <= 0.1 x range


def detect_engulfing(candles: Sequence[Candle]) -> Optional[SignalKind]:
    """
    Two-candle engulfing pattern.

    The later candle must have the opposite colour of the earlier one and
    its body must contain the earlier body (edges inclusive).
    """
    if len(candles) < 2:
        return None
    prev, curr = candles[-2], candles[-1]

    engulfs = curr.body_top >= prev.body_top and curr.body_bottom <= prev.body_bottom
    if not engulfs:
        return None

    if prev.is_bearish and curr.is_bullish:
        return SignalKind.BULLISH_ENGULFING
    if prev.is_bullish and curr.is_bearish:
        return SignalKind.BEARISH_ENGULFING
    return None


def detect_hammer(candles: Sequence[Candle]) -> Optional[SignalKind]:
    """
    Single-candle hammer / shooting star on the latest candle.

    Long lower wick with a small upper wick is bullish; the mirror
    image is bearish.
    """
    if not candles:
        return None
    candle = candles[-1]

    total_range = candle.range
    if total_range <= 0:
        return None

    body = candle.body
    if body / total_range >= HAMMER_MAX_BODY_SHARE:
        return None

    upper_wick = candle.high - candle.body_top
    lower_wick = candle.body_bottom - candle.low

    if body > 0:
        opposite_max = HAMMER_OPPOSITE_WICK_MAX * body
    else:
        opposite_max = HAMMER_DOJI_OPPOSITE_SHARE * total_range

    if lower_wick >= HAMMER_TAIL_MULTIPLIER * body and upper_wick <= opposite_max:
        if lower_wick > 0:
            return SignalKind.BULLISH_HAMMER
    if upper_wick >= HAMMER_TAIL_MULTIPLIER * body and lower_wick <= opposite_max:
        if upper_wick > 0:
            return SignalKind.BEARISH_HAMMER
    return None


def detect_signal(candles: Sequence[Candle]) -> Optional[SignalKind]:
    """Engulfing takes precedence over hammer."""
    return detect_engulfing(candles) or detect_hammer(candles)
