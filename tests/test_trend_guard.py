"""
Tests for the counter-trend guard.
"""

from ai.schemas import OpenLong, OpenShort
from core.trend_guard import TrendGuard, analyze_trend, ema, rsi
from tests.helpers import trending_closes


def _guard(series, **kwargs):
    return TrendGuard(lambda symbol: series, **kwargs)


def test_ema_needs_full_period():
    assert ema([1.0] * 19, 20) is None
    assert ema([1.0] * 20, 20) == 1.0


def test_rsi_extremes():
    rising = [float(i) for i in range(30)]
    falling = list(reversed(rising))

    assert rsi(rising) == 100.0
    assert rsi(falling) == 0.0
    assert rsi(rising[:10]) is None


def test_strong_uptrend_detected():
    trend = analyze_trend(trending_closes(100.0, 1.0))

    assert trend.direction == "BULLISH"
    assert trend.strength >= 6


def test_flat_series_is_neutral():
    trend = analyze_trend([100.0] * 60)

    assert trend.direction == "NEUTRAL"
    assert trend.strength == 1


def test_insufficient_history_returns_none():
    assert analyze_trend([100.0] * 49) is None


def test_short_against_strong_uptrend_blocked():
    guard = _guard(trending_closes(100.0, 1.0), min_strength=6)

    result = guard.check("acct-1", OpenShort(symbol="BTC", size_usd=500, leverage=3))

    assert not result.allowed
    assert result.direction == "BULLISH"
    assert "Strong BULLISH trend" in result.reason


def test_long_with_uptrend_allowed():
    guard = _guard(trending_closes(100.0, 1.0))

    assert guard.check("acct-1", OpenLong(symbol="BTC", size_usd=500, leverage=3)).allowed


def test_long_against_strong_downtrend_blocked():
    guard = _guard(trending_closes(100.0, -1.0))

    result = guard.check("acct-1", OpenLong(symbol="BTC", size_usd=500, leverage=3))

    assert not result.allowed
    assert result.direction == "BEARISH"


def test_missing_data_lets_trade_through():
    def failing(symbol):
        raise RuntimeError("candle API down")

    short = OpenShort(symbol="BTC", size_usd=500, leverage=3)

    assert TrendGuard(failing).check("acct-1", short).allowed
    assert _guard([100.0] * 10).check("acct-1", short).allowed
    assert _guard(trending_closes(100.0, 1.0), enabled=False).check("acct-1", short).allowed
