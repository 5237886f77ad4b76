"""Pure indicator and candle-pattern functions."""

from atr_reversal.strategies.atr import calculate_atr, true_range
from atr_reversal.strategies.candle_patterns import detect_engulfing, detect_hammer, detect_signal

__all__ = ["calculate_atr", "true_range", "detect_engulfing", "detect_hammer", "detect_signal"]
