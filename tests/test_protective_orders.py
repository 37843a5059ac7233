"""Tests for stop-loss / take-profit sanitization."""

import pytest

from core.models import Side
from core.protective_orders import (
    ProtectiveConfig,
    generate_invalidation_condition,
    sanitize_protective_prices,
)


def test_valid_long_levels_untouched():
    result = sanitize_protective_prices(Side.LONG, 100.0, 95.0, 110.0)

    assert result.stop_loss == 95.0
    assert result.take_profit == 110.0
    assert result.adjustments == []


def test_small_values_read_as_percentages():
    result = sanitize_protective_prices(Side.LONG, 100.0, 2.0, 3.0)

    assert result.stop_loss == pytest.approx(98.0)
    assert result.take_profit == pytest.approx(103.0)
    assert len(result.adjustments) == 2


def test_percentages_for_short_go_the_other_way():
    result = sanitize_protective_prices(Side.SHORT, 100.0, 2.0, 3.0)

    assert result.stop_loss == pytest.approx(102.0)
    assert result.take_profit == pytest.approx(97.0)


def test_missing_stop_gets_default_and_missing_tp_stays_none():
    result = sanitize_protective_prices(Side.LONG, 100.0, None, None, ProtectiveConfig(default_stop_loss_pct=3.0))

    assert result.stop_loss == pytest.approx(97.0)
    assert result.take_profit is None


def test_wrong_side_levels_reset_to_defaults():
    config = ProtectiveConfig(default_stop_loss_pct=3.0, default_take_profit_pct=0.8)

    result = sanitize_protective_prices(Side.SHORT, 100.0, 95.0, 105.0, config)

    assert result.stop_loss == pytest.approx(103.0)
    assert result.take_profit == pytest.approx(99.2)


def test_non_positive_levels_treated_as_missing():
    result = sanitize_protective_prices(Side.LONG, 100.0, 0.0, -5.0)

    assert result.stop_loss == pytest.approx(97.0)
    assert result.take_profit is None


def test_invalid_entry_raises():
    with pytest.raises(ValueError):
        sanitize_protective_prices(Side.LONG, 0.0, 95.0, 110.0)


def test_invalidation_condition_text():
    with_stop = generate_invalidation_condition("BTC", Side.LONG, 60_000.0, 58_200.0)
    without_stop = generate_invalidation_condition("ETH", Side.SHORT, 3_000.0)

    assert with_stop == "If BTC price closes below $58200.00 (3.0% stop loss) on 3-minute candle"
    assert "above $3150.00" in without_stop
