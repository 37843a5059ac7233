"""
perptrader Core: Performance Metrics

Account-level figures handed to the decision source each cycle.
"""

import math
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from core.accounts import AccountConfig
from core.models import Trade, TradeAction

# Loop runs every 3 minutes: 20/hour * 24 * 365
PERIODS_PER_YEAR = 175_200


@dataclass
class PerformanceMetrics:
    total_return_pct: float = 0.0
    sharpe_ratio: float = 0.0
    invocation_count: int = 0
    minutes_since_start: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def sharpe_ratio(returns: Iterable[float], periods_per_year: int = PERIODS_PER_YEAR) -> float:
    """Annualized Sharpe over per-trade returns (population variance), rounded to 2 places."""
    values = [r for r in returns if r is not None]
    if len(values) < 2:
        return 0.0
    mean = sum(values) / len(values)
    variance = sum((r - mean) ** 2 for r in values) / len(values)
    std = math.sqrt(variance)
    if std == 0:
        return 0.0
    return round(mean / std * math.sqrt(periods_per_year), 2)


def compute_performance(
    account: Optional[AccountConfig],
    account_value: float,
    trades: Iterable[Trade],
    now: datetime,
) -> PerformanceMetrics:
    if account is None:
        return PerformanceMetrics()

    starting = account.initial_capital
    total_return = (account_value - starting) / starting * 100 if starting > 0 else 0.0

    minutes = 0
    if account.started_at is not None:
        minutes = max(0, int((now - account.started_at).total_seconds() // 60))

    closed_returns = [t.pnl_pct for t in trades if t.action is TradeAction.CLOSE and t.pnl_pct is not None]

    return PerformanceMetrics(
        total_return_pct=total_return,
        sharpe_ratio=sharpe_ratio(closed_returns),
        invocation_count=account.invocation_count,
        minutes_since_start=minutes,
    )
