from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from atr_reversal.shared.models import Candle, SignalKind
from atr_reversal.strategies.candle_patterns import detect_engulfing, detect_hammer, detect_signal

_START = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _candle(o, h, l, c, minute: int = 0) -> Candle:
    open_time = _START + timedelta(minutes=5 * minute)
    return Candle(
        symbol="BTCUSDT",
        open_time=open_time,
        close_time=open_time + timedelta(minutes=5),
        open=Decimal(str(o)),
        high=Decimal(str(h)),
        low=Decimal(str(l)),
        close=Decimal(str(c)),
    )


def test_bullish_engulfing() -> None:
    candles = [_candle(105, 106, 99, 100, 0), _candle(99, 107, 98, 106, 1)]
    assert detect_engulfing(candles) == SignalKind.BULLISH_ENGULFING


def test_bearish_engulfing() -> None:
    candles = [_candle(100, 106, 99, 105, 0), _candle(106, 107, 98, 99, 1)]
    assert detect_engulfing(candles) == SignalKind.BEARISH_ENGULFING


def test_engulfing_accepts_equal_body_edges() -> None:
    candles = [_candle(105, 106, 99, 100, 0), _candle(100, 106, 99, 105, 1)]
    assert detect_engulfing(candles) == SignalKind.BULLISH_ENGULFING


def test_engulfing_requires_opposite_colours() -> None:
    candles = [_candle(100, 106, 99, 105, 0), _candle(99, 107, 98, 106, 1)]
    assert detect_engulfing(candles) is None


def test_engulfing_requires_body_containment() -> None:
    candles = [_candle(105, 106, 99, 100, 0), _candle(101, 107, 100, 104, 1)]
    assert detect_engulfing(candles) is None


def test_engulfing_needs_two_candles() -> None:
    assert detect_engulfing([]) is None
    assert detect_engulfing([_candle(100, 101, 99, 100.5)]) is None


def test_bullish_hammer() -> None:
    # body 1, lower wick 6, upper wick 0.5, range 7.5
    candle = _candle(106, 107.5, 100, 107)
    assert detect_hammer([candle]) == SignalKind.BULLISH_HAMMER


def test_bearish_hammer() -> None:
    # body 1, upper wick 6, lower wick 0.5
    candle = _candle(101, 108, 100.5, 102)
    assert detect_hammer([candle]) == SignalKind.BEARISH_HAMMER


def test_hammer_rejects_large_body() -> None:
    candle = _candle(100, 104.5, 99, 104)
    assert detect_hammer([candle]) is None


def test_hammer_rejects_long_opposite_wick() -> None:
    # body 1, lower wick 4, upper wick 1 (> 0.6 x body)
    candle = _candle(104, 106, 100, 105)
    assert detect_hammer([candle]) is None


@pytest.mark.parametrize(
    "candle",
    [
        _candle(100, 100, 100, 100),  # zero range
        _candle(100, 101, 99, 100),  # zero body, both wicks
        _candle(100, 103, 99, 100),  # zero body, uneven wicks
    ],
)
def test_degenerate_candles_never_raise(candle: Candle) -> None:
    assert detect_hammer([candle]) is None
    assert detect_engulfing([candle, candle]) is None
    assert detect_signal([candle, candle]) is None


def test_zero_body_dragonfly_is_bullish() -> None:
    candle = _candle(100, 100, 95, 100)
    assert detect_hammer([candle]) == SignalKind.BULLISH_HAMMER


def test_detect_signal_prefers_engulfing() -> None:
    prev = _candle(100.6, 100.8, 100.3, 100.4, 0)
    # bullish engulfing that is also hammer shaped
    curr = _candle(100.3, 100.75, 97, 100.7, 1)
    assert detect_hammer([prev, curr]) == SignalKind.BULLISH_HAMMER
    assert detect_signal([prev, curr]) == SignalKind.BULLISH_ENGULFING


def test_detect_signal_falls_back_to_hammer() -> None:
    prev = _candle(100, 101, 99, 100.5, 0)
    curr = _candle(106, 107.5, 100, 107, 1)
    assert detect_engulfing([prev, curr]) is None
    assert detect_signal([prev, curr]) == SignalKind.BULLISH_HAMMER


def test_zero_body_with_small_opposite_wick_uses_range_share() -> None:
    assert detect_hammer([_candle(100, 100.2, 95, 100)]) == SignalKind.BULLISH_HAMMER
    assert detect_hammer([_candle(100, 105, 99.8, 100)]) == SignalKind.BEARISH_HAMMER
    # opposite wick above a tenth of the range
    assert detect_hammer([_candle(100, 100.6, 95, 100)]) is None
