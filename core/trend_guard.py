"""
perptrader Core: Trend Guard

Blocks opens that fight a strong trend. Direction comes from price vs EMA20
and EMA20 vs EMA50 on hourly closes; strength is a 1-10 score built from EMA
separation, RSI confirmation and how well the two EMA spreads agree.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from ai.schemas import OpenDecision
from core.audit_log import AuditLogger
from core.models import Side

logger = logging.getLogger(__name__)

TREND_THRESHOLD_PCT = 0.5

# symbol -> closing prices, oldest first
CloseProvider = Callable[[str], Sequence[float]]


def ema(prices: Sequence[float], period: int = 20) -> Optional[float]:
    """SMA-seeded exponential moving average; None when there is not enough data."""
    if len(prices) < period:
        return None
    value = sum(prices[:period]) / period
    multiplier = 2 / (period + 1)
    for price in prices[period:]:
        value = (price - value) * multiplier + value
    return value


def rsi(prices: Sequence[float], period: int = 14) -> Optional[float]:
    """Wilder-smoothed RSI; None when there is not enough data."""
    if len(prices) < period + 1:
        return None
    changes = [b - a for a, b in zip(prices, prices[1:])]
    avg_gain = sum(c for c in changes[:period] if c > 0) / period
    avg_loss = sum(-c for c in changes[:period] if c < 0) / period
    for change in changes[period:]:
        avg_gain = (avg_gain * (period - 1) + max(change, 0.0)) / period
        avg_loss = (avg_loss * (period - 1) + max(-change, 0.0)) / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100 - 100 / (1 + rs)


def _pct_diff(value: float, reference: float) -> float:
    if not reference:
        return 0.0
    return (value - reference) / reference * 100


def trend_direction(price_vs_ema20_pct: float, ema20_vs_ema50_pct: float) -> str:
    if price_vs_ema20_pct > TREND_THRESHOLD_PCT and ema20_vs_ema50_pct > TREND_THRESHOLD_PCT:
        return "BULLISH"
    if price_vs_ema20_pct < -TREND_THRESHOLD_PCT and ema20_vs_ema50_pct < -TREND_THRESHOLD_PCT:
        return "BEARISH"
    return "NEUTRAL"


def trend_strength(price_vs_ema20_pct: float, ema20_vs_ema50_pct: float, rsi_value: float) -> int:
    score = 0

    separation = abs(price_vs_ema20_pct) + abs(ema20_vs_ema50_pct)
    if separation >= 3:
        score += 4
    elif separation >= 2:
        score += 3
    elif separation >= 1:
        score += 2
    elif separation >= 0.5:
        score += 1

    bullish = price_vs_ema20_pct > 0 and ema20_vs_ema50_pct > 0
    bearish = price_vs_ema20_pct < 0 and ema20_vs_ema50_pct < 0

    if bullish and rsi_value > 50:
        score += 3 if rsi_value >= 65 else 2 if rsi_value >= 55 else 1
    elif bearish and rsi_value < 50:
        score += 3 if rsi_value <= 35 else 2 if rsi_value <= 45 else 1

    if bullish or bearish:
        a, b = abs(price_vs_ema20_pct), abs(ema20_vs_ema50_pct)
        ratio = min(a, b) / (max(a, b) or 1)
        score += 3 if ratio >= 0.7 else 2 if ratio >= 0.4 else 1

    return max(1, min(10, score))


@dataclass
class TrendAnalysis:
    direction: str
    strength: int
    price_vs_ema20_pct: float
    ema20_vs_ema50_pct: float
    rsi: float


def analyze_trend(closes: Sequence[float]) -> Optional[TrendAnalysis]:
    """Classify the trend of a close series. None when fewer than 50 closes."""
    prices: List[float] = list(closes)
    ema20 = ema(prices, 20)
    ema50 = ema(prices, 50)
    if ema20 is None or ema50 is None:
        return None
    rsi_value = rsi(prices, 14)
    if rsi_value is None:
        rsi_value = 50.0
    price_vs_ema20 = _pct_diff(prices[-1], ema20)
    ema20_vs_ema50 = _pct_diff(ema20, ema50)
    return TrendAnalysis(
        direction=trend_direction(price_vs_ema20, ema20_vs_ema50),
        strength=trend_strength(price_vs_ema20, ema20_vs_ema50, rsi_value),
        price_vs_ema20_pct=price_vs_ema20,
        ema20_vs_ema50_pct=ema20_vs_ema50,
        rsi=rsi_value,
    )


@dataclass(frozen=True)
class TrendGuardResult:
    allowed: bool
    reason: str
    direction: Optional[str] = None
    strength: Optional[int] = None


class TrendGuard:
    """Rejects opens against a trend at or above min_strength. Missing data lets the trade through."""

    def __init__(
        self,
        closes: CloseProvider,
        audit: Optional[AuditLogger] = None,
        min_strength: int = 6,
        enabled: bool = True,
    ):
        self.closes = closes
        self.audit = audit
        self.min_strength = min_strength
        self.enabled = enabled

    def check(self, account_id: str, decision: OpenDecision) -> TrendGuardResult:
        if not self.enabled:
            return TrendGuardResult(True, "Trend guard disabled")

        try:
            series = self.closes(decision.symbol)
        except Exception as e:
            logger.warning(f"Trend guard skipped for {decision.symbol}: candle fetch failed ({e})")
            return TrendGuardResult(True, "No market data available")

        trend = analyze_trend(series or [])
        if trend is None:
            return TrendGuardResult(True, "Not enough candles for trend analysis")

        against = (
            (decision.side is Side.LONG and trend.direction == "BEARISH")
            or (decision.side is Side.SHORT and trend.direction == "BULLISH")
        )
        if against and trend.strength >= self.min_strength:
            message = f"Trend guard blocked counter-trend trade: {decision.action} on {decision.symbol}"
            details = {
                "symbol": decision.symbol,
                "trend_direction": trend.direction,
                "trend_strength": trend.strength,
                "price_vs_ema20_pct": round(trend.price_vs_ema20_pct, 3),
            }
            if self.audit is not None:
                self.audit.system_log("WARNING", "trend_guard", message, account_id=account_id, details=details)
            else:
                logger.warning(message)
            return TrendGuardResult(
                False, f"Strong {trend.direction} trend (strength: {trend.strength}/10)",
                trend.direction, trend.strength,
            )

        logger.info(f"{decision.symbol}: trade aligned with {trend.direction} trend (strength {trend.strength}/10)")
        return TrendGuardResult(True, f"Aligned with {trend.direction} trend", trend.direction, trend.strength)
