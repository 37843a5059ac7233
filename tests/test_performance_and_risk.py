"""Tests for account performance figures and hard risk caps."""

from datetime import datetime, timedelta, timezone

import pytest

from ai.schemas import OpenLong
from core.accounts import AccountConfig
from core.models import Side, Trade, TradeAction
from core.performance import PerformanceMetrics, compute_performance, sharpe_ratio
from core.risk import check_open_risk
from core.trading_config import TradingLimits

NOW = datetime(2024, 11, 1, 12, 0, tzinfo=timezone.utc)


def _close(pnl_pct):
    return Trade(
        account_id="a1", symbol="BTC", action=TradeAction.CLOSE, side=Side.LONG,
        size_usd=500.0, leverage=5.0, price=60_000.0, executed_at=NOW, pnl_pct=pnl_pct,
    )


def test_sharpe_needs_two_returns_and_variance():
    assert sharpe_ratio([]) == 0.0
    assert sharpe_ratio([5.0]) == 0.0
    assert sharpe_ratio([2.0, 2.0, 2.0]) == 0.0


def test_sharpe_annualized():
    # mean 1, population std 1
    assert sharpe_ratio([0.0, 2.0], periods_per_year=100) == pytest.approx(10.0)


def test_compute_performance():
    account = AccountConfig(
        account_id="a1", initial_capital=1_000.0, started_at=NOW - timedelta(minutes=90), invocation_count=30,
    )
    opened = Trade(
        account_id="a1", symbol="BTC", action=TradeAction.OPEN, side=Side.LONG,
        size_usd=500.0, leverage=5.0, price=60_000.0, executed_at=NOW,
    )

    metrics = compute_performance(account, 1_100.0, [opened, _close(0.0), _close(2.0)], NOW)

    assert metrics.total_return_pct == pytest.approx(10.0)
    assert metrics.minutes_since_start == 90
    assert metrics.invocation_count == 30
    assert metrics.sharpe_ratio > 0


def test_compute_performance_without_account():
    assert compute_performance(None, 500.0, [], NOW) == PerformanceMetrics()


LIMITS = TradingLimits(max_positions=3, max_same_direction=2, min_position_usd=100.0,
                       max_leverage=10.0, max_position_size=0.5)


def test_risk_caps_pass_within_limits():
    result = check_open_risk(OpenLong(symbol="BTC", size_usd=500.0, leverage=10), LIMITS, 1_000.0)
    assert result.approved


def test_risk_caps_reject_size_and_leverage():
    result = check_open_risk(OpenLong(symbol="BTC", size_usd=600.0, leverage=12), LIMITS, 1_000.0)

    assert not result.approved
    assert result.violated_checks == ["max_position_size", "max_leverage"]
